"""brokergate: rate-limited, priority-ordered access to brokerage REST APIs."""

__version__ = "0.1.0"
