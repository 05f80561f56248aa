"""HTTP surface of the meal-subscription billing and fulfillment engine."""

__version__ = "0.4.0"
