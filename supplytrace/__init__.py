# supplytrace/__init__.py

from supplytrace.errors import (  # noqa: F401
    ConfigurationError,
    InvalidStateError,
    LedgerUnavailableError,
    NotFoundError,
    SupplyTraceError,
    ValidationError,
)

__version__ = "0.1.0"
