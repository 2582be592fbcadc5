"""Business logic services.

Services are called by route handlers and own their database work. Routes
never touch the database or the builder directly.
"""
