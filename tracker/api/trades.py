"""Trade ledger API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from tracker.database import get_session
from tracker.models.trade import TraderTrade

router = APIRouter(prefix="/api/trades", tags=["trades"])


@router.get("")
def list_trades(
    user: int | None = None,
    token: str | None = None,
    open_only: bool = False,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(TraderTrade).order_by(TraderTrade.start_date.desc())
    if user is not None:
        stmt = stmt.where(TraderTrade.user == user)
    if token is not None:
        stmt = stmt.where(TraderTrade.token == token)
    if open_only:
        stmt = stmt.where(TraderTrade.end_date == None)  # noqa: E711
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/{trade_id}")
def get_trade(trade_id: str, session: Session = Depends(get_session)):
    trade = session.exec(
        select(TraderTrade).where(TraderTrade.trade_id == trade_id)
    ).first()
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade
