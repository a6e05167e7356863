# Import all models so Base.metadata.create_all() can see them.

from qrorder.models.user import User  # noqa: F401
from qrorder.models.admin import Admin  # noqa: F401
from qrorder.models.merchant import Merchant, Product  # noqa: F401
from qrorder.models.order import Order, OrderItem  # noqa: F401
from qrorder.models.tokens import (  # noqa: F401
    TokenType,
    TokenBalance,
    TokenTransaction,
    TokenRedemption,
    RewardRule,
    NewUserBonus,
)
