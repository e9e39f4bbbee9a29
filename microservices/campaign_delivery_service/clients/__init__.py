"""
Campaign Delivery Service Clients

Clients for external collaborators.
"""

from .email_transport_client import EmailTransportClient

__all__ = [
    "EmailTransportClient",
]
