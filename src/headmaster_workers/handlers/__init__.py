# Import all handlers so they register themselves.
from . import ledger  # noqa: F401
