"""WebAuthn ceremony collaborator built on py_webauthn.

Everything cryptographic about passkeys (attestation parsing, signature
checks, origin / rpId binding) happens inside the `webauthn` library; this
class only translates between its structs and the base64url strings we
persist. It is synchronous; callers run it in a worker thread.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .errors import VerificationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredCredential:
    credential_id: str
    public_key: str
    sign_count: int
    device_type: Optional[str] = None
    backed_up: bool = False


def _descriptors(ids: List[str]) -> List[PublicKeyCredentialDescriptor]:
    return [PublicKeyCredentialDescriptor(id=base64url_to_bytes(i)) for i in ids]


class WebAuthnVerifier:
    def __init__(self, rp_name: str, timeout_ms: int = 60000):
        self.rp_name = rp_name
        self.timeout_ms = timeout_ms

    def registration_options(
        self, *, rp_id: str, user_key: str, user_name: str, exclude_ids: List[str]
    ) -> Tuple[Dict[str, Any], str]:
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=self.rp_name,
            user_id=user_key.encode("utf-8"),
            user_name=user_name,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=_descriptors(exclude_ids),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_registration(
        self, *, credential: Dict[str, Any], challenge: str, origin: str, rp_id: str
    ) -> RegisteredCredential:
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            logger.info("webauthn registration rejected: %s", e)
            raise VerificationFailed("verification failed") from e

        return RegisteredCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            device_type=getattr(verified.credential_device_type, "value", None),
            backed_up=bool(verified.credential_backed_up),
        )

    def authentication_options(self, *, rp_id: str, allow_ids: List[str]) -> Tuple[Dict[str, Any], str]:
        options = generate_authentication_options(
            rp_id=rp_id,
            timeout=self.timeout_ms,
            allow_credentials=_descriptors(allow_ids),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_authentication(
        self,
        *,
        credential: Dict[str, Any],
        challenge: str,
        origin: str,
        rp_id: str,
        public_key: str,
        sign_count: int,
    ) -> int:
        """Returns the authenticator's new signature counter."""
        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
                credential_public_key=base64url_to_bytes(public_key),
                credential_current_sign_count=sign_count,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            logger.info("webauthn assertion rejected: %s", e)
            raise VerificationFailed("verification failed") from e
        return verified.new_sign_count
