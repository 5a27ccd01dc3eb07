"""
auth/errors.py -- Failure taxonomy for the passkey subsystem.

Every ceremony and store failure that can reach a client is one of these.
Each class carries the HTTP status and machine-readable code the API layer
renders into the standard error envelope; api/main.py registers a single
handler for AuthError.

message is always safe to show a client. Internal detail (library exception
text, SQL errors) is logged where it is caught and never stored here.

Layer rule: stdlib only.
"""

from __future__ import annotations

# Shared by every login failure so the response does not reveal which check
# failed (unknown user, unknown credential, bad signature, bad recovery code).
GENERIC_AUTH_FAILURE = "Authentication failed."


class AuthError(Exception):
    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class PreconditionFailed(AuthError):
    code = "precondition_failed"
    default_message = "Precondition failed."


class UsernameTaken(PreconditionFailed):
    code = "username_taken"
    default_message = "Username already exists."


class InvitationRequired(PreconditionFailed):
    status_code = 403
    code = "invitation_required"
    default_message = "An invitation is required to register."


class InvalidInvitation(PreconditionFailed):
    status_code = 403
    code = "invalid_invitation"
    default_message = "Invalid or expired invitation."


class InvalidSetupToken(PreconditionFailed):
    status_code = 403
    code = "invalid_setup_token"
    default_message = "Invalid or expired setup link."


class CeremonyNotInProgress(AuthError):
    code = "ceremony_not_in_progress"


class NoRegistrationInProgress(CeremonyNotInProgress):
    code = "no_registration_in_progress"
    default_message = "No registration in progress."


class NoLoginInProgress(CeremonyNotInProgress):
    code = "no_login_in_progress"
    default_message = "No login in progress."


class AuthenticationFailed(AuthError):
    code = "authentication_failed"
    default_message = GENERIC_AUTH_FAILURE


class VerificationFailed(AuthError):
    code = "verification_failed"
    default_message = "Verification failed."


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class LastCredentialError(AuthError):
    code = "last_credential"
    default_message = "Cannot delete your only passkey. Add another passkey first."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class InternalError(AuthError):
    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred."
