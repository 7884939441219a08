from enum import Enum

# -------------------------------------------------------------- #
# Server / Services Manager Types
# -------------------------------------------------------------- #


class ServerManagerType(Enum):
    """Selects which family of server handlers and services gets constructed."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
