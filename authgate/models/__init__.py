from authgate.models.audit_log import AuditLog
from authgate.models.mfa_challenge import MfaChallenge
from authgate.models.mfa_factor import MfaFactor
from authgate.models.mfa_rate_limit import MfaRateLimit
from authgate.models.mfa_recovery_code import MfaRecoveryCode
from authgate.models.profile_secret import ProfileSecret
from authgate.models.trusted_device import TrustedDevice
from authgate.models.workspace_key import WorkspaceKey

__all__ = [
    "AuditLog",
    "MfaChallenge",
    "MfaFactor",
    "MfaRateLimit",
    "MfaRecoveryCode",
    "ProfileSecret",
    "TrustedDevice",
    "WorkspaceKey",
]
