"""Visit tracking: attribution, anonymous identity and visit sessions for a web host."""

__all__ = ["config", "errors", "tracking"]
