"""
User roles enumeration.

Defines the role types for the restaurant loyalty platform.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Platform operator (subscriptions, reconciliation)
        RESTAURANT_OWNER: Owns restaurants, sells plans and tops up customers
        CLIENT: End user who scans, pays and gifts (default role)
    """
    ADMIN = "ADMIN"
    RESTAURANT_OWNER = "RESTAURANT_OWNER"
    CLIENT = "CLIENT"
