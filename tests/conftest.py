"""Shared fixtures: in-memory SQLite engine and feed payload builders."""

import os

# Must be set before tracker.config is imported anywhere
os.environ.setdefault("TRACKER_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import tracker.models  # noqa: F401

ADDRESS = "dydx1trader"
USER = 7
TRACKED = {"BTCUSD", "ETHUSD"}


def is_tracked(symbol: str) -> bool:
    return symbol in TRACKED


def position_payload(
    market: str = "BTC-USD",
    side: str = "LONG",
    status: str = "OPEN",
    size: str = "10",
    sum_open: str = "10",
    sum_close: str = "0",
    entry: str = "100",
    exit: str | None = None,
    funding: str = "0",
    created_at: str = "2024-03-31T09:08:12.345Z",
    height: str = "1000",
) -> dict:
    return {
        "market": market,
        "side": side,
        "status": status,
        "size": size,
        "maxSize": size,
        "sumOpen": sum_open,
        "sumClose": sum_close,
        "entryPrice": entry,
        "exitPrice": exit,
        "netFunding": funding,
        "realizedPnl": "0",
        "unrealizedPnl": "0",
        "createdAt": created_at,
        "createdAtHeight": height,
    }


def fill_payload(height: str = "2000", created_at: str = "2024-04-01T10:00:00.000Z") -> dict:
    return {
        "market": "BTC-USD",
        "side": "BUY",
        "size": "10",
        "price": "100",
        "createdAt": created_at,
        "createdAtHeight": height,
    }


def snapshot_frame(positions: dict, address: str = ADDRESS) -> dict:
    return {
        "type": "subscribed",
        "connection_id": "c0",
        "message_id": 1,
        "channel": "v4_subaccounts",
        "id": f"{address}/0",
        "contents": {
            "subaccount": {
                "address": address,
                "subaccountNumber": 0,
                "openPerpetualPositions": positions,
            }
        },
    }


def update_frame(positions: list, fills: list, address: str = ADDRESS) -> dict:
    return {
        "type": "channel_data",
        "connection_id": "c0",
        "message_id": 2,
        "channel": "v4_subaccounts",
        "id": f"{address}/0",
        "version": "2.4.0",
        "contents": {"perpetualPositions": positions, "fills": fills},
    }


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()
