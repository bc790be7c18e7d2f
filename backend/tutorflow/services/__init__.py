"""
Service layer: business rules and transaction boundaries.

Services own the unit of work; repositories beneath them only flush.
"""
