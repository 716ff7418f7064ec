"""Two-party call signaling relay and client negotiation core."""

__version__ = "0.1.0"
