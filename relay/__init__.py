"""Claude Relay — chat bot that relays messages to a local AI coding agent."""

__version__ = "0.1.0"
