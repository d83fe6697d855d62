"""Account engine: API-key issuance and monthly credit accounting."""

__version__ = "0.1.0"
