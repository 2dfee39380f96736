"""Request-scoped access to the service container."""
from fastapi import Request

from payment_resilience.container import PaymentServices


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services
