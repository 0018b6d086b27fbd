"""ChatPulse: real-time presence and message relay."""
__version__ = "0.1.0"
