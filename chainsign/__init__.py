"""Sequential, OTP-gated PDF signing chains."""

__version__ = "0.1.0"
