"""MedBook: Telegram appointment booking for a single doctor's practice."""

__version__ = "0.1.0"
