"""KeyGate — per-email API keys with a fixed request quota."""

__version__ = "1.0.0"
