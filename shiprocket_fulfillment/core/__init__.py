from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.database import get_db, Base
from shiprocket_fulfillment.core.exceptions import (
    ShiprocketError,
    ShiprocketUnauthorizedError,
    ShiprocketNotFoundError,
    ShiprocketRateLimitedError,
    ShiprocketInvalidDataError,
    ShiprocketUnavailableError,
    ShiprocketTimeoutError,
    ShiprocketMisconfiguredError,
    ShiprocketNoCourierError,
)
