"""Route modules for the API."""
from api.routes import health, payments, webhooks

__all__ = ["health", "payments", "webhooks"]
