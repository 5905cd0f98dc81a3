"""
Delivery lifecycle backend.

Order state machine, courier claim coordination, live location tracking and
delivery verification for the food-ordering application.
"""

__version__ = "1.0.0"
