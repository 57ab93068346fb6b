"""FreshDrop laundry marketplace order fulfillment backend."""

__version__ = "1.0.0"
