"""Feed protocol constants and storage precision."""

# Frame types sent by the indexer
CONNECTED_TYPE = "connected"
SUBSCRIPTION_TYPE = "subscribed"
DATA_TYPE = "channel_data"
ERROR_TYPE = "error"

# Position statuses
OPEN_STATUS = "OPEN"
CLOSED_STATUS = "CLOSED"

# Position sides and their stored bias
LONG_SIDE = "LONG"
SHORT_SIDE = "SHORT"
LONG_BIAS = 1
SHORT_BIAS = 0

# Ledger row lifecycle tags
OPEN_TYPE = "open"
UPDATE_TYPE = "update"
CLOSE_TYPE = "close"
NOTIFY_TYPES = frozenset({OPEN_TYPE, CLOSE_TYPE})

# Fixed-point scale of stored values (on-chain precision)
AMOUNT_DECIMALS = 6
PRICE_DECIMALS = 18

# users_wallets.trader_type for DEX traders followed by this service
DEX_TRADER_TYPE = 3
