"""Admission core: address bans, account bans, lockout and credentials."""

from trackgate.security.admission import (
    AdmissionPipeline,
    AdmissionRequest,
    Decision,
    DenyReason,
)
from trackgate.security.ban_registry import BanRegistry
from trackgate.security.credentials import Claims, CredentialService
from trackgate.security.gatekeeper import Gatekeeper
from trackgate.security.lockout import LockoutGuard

__all__ = [
    "AdmissionPipeline",
    "AdmissionRequest",
    "BanRegistry",
    "Claims",
    "CredentialService",
    "Decision",
    "DenyReason",
    "Gatekeeper",
    "LockoutGuard",
]
