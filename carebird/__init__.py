"""carebird: Bird SMS keyword webhook backed by Airtable and Stripe."""

__version__ = "1.0.0"
