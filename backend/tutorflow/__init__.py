"""Class-lifecycle scheduling and escrow settlement engine for a tutoring marketplace."""

__version__ = "0.1.0"
