"""
Service interfaces for dependency inversion.
External collaborators (membership billing, payment authority, notifier)
are reached only through these, so tests and deployments can swap them.
"""

from .entitlement import EntitlementGrant, EntitlementProvider, EntitlementRequest
from .notifier import Notification, NotificationKind, Notifier
from .payment import PaymentAuthority, PaymentAuthorization

__all__ = [
    'EntitlementGrant', 'EntitlementProvider', 'EntitlementRequest',
    'Notification', 'NotificationKind', 'Notifier',
    'PaymentAuthority', 'PaymentAuthorization',
]
