"""
Audit logging. Security-relevant events only; no tokens, codes, secrets or passwords.
Rejected single-use artifacts and client substitution attempts are recorded with outcome=fail.
"""
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CONSENT_ALLOW = "consent_allow"
EVENT_CONSENT_DENY = "consent_deny"
EVENT_CONSENT_REVOKED = "consent_revoked"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_CODE_REJECTED = "code_rejected"
EVENT_REFRESH_REJECTED = "refresh_rejected"
EVENT_CLIENT_MISMATCH = "client_mismatch"
EVENT_CLIENT_REGISTERED = "client_registered"
EVENT_CLIENT_DELETED = "client_deleted"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are the proxy's job."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    user_id: int | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Failing to audit never fails the request."""
    try:
        db.add(
            AuditLog(
                event_type=event_type,
                client_id=client_id,
                user_id=user_id,
                ip=ip,
                outcome=outcome,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Could not write audit event %s: %s", event_type, e.__class__.__name__)
