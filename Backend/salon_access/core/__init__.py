"""
Core module - configuration, database and error taxonomy.
"""
from .config import Settings, get_settings
from .db import Base, create_engine_for_url, get_engine, get_sessionmaker
from .errors import (
    SalonAccessError,
    StoreUnavailableError,
    ProfileProvisioningError,
    AuthenticationError,
    AuthorizationError,
    ErrorCodes,
    error_detail,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "create_engine_for_url",
    "get_engine",
    "get_sessionmaker",
    # Errors
    "SalonAccessError",
    "StoreUnavailableError",
    "ProfileProvisioningError",
    "AuthenticationError",
    "AuthorizationError",
    "ErrorCodes",
    "error_detail",
]
