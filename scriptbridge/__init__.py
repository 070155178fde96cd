"""scriptbridge - run untrusted scripts against a capability-limited host API."""

__version__ = "0.1.0"
__logo__ = "🧩"
