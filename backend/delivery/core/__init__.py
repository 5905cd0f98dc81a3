"""
Core package for shared utilities.

Configuration, structured logging and the error taxonomy shared by the
store, the services and the HTTP layer.
"""
