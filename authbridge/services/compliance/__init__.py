from __future__ import annotations

from authbridge.services.compliance.consents import CONSENT_TYPES, list_consents, record_consent
from authbridge.services.compliance.data_requests import (
    REQUEST_TYPES,
    anonymize_user,
    create_data_request,
    list_data_requests,
)


__all__ = [
    "CONSENT_TYPES",
    "REQUEST_TYPES",
    "anonymize_user",
    "create_data_request",
    "list_consents",
    "list_data_requests",
    "record_consent",
]
