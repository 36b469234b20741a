"""Job dispatch and provider coordination for generative-agent backends."""

__version__ = "0.1.0"
