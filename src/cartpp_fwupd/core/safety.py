"""
Signature gating for firmware updates.

Centralizes the rule deciding whether an image may be flashed, so every
entry point enforces the same check before touching USB.
"""

import logging
from dataclasses import dataclass

from cartpp_fwupd.errors import SignatureFormatError, SignatureRejectedError
from cartpp_fwupd.firmware_image import FirmwareArchive

logger = logging.getLogger(__name__)

OVERRIDE_FLAG = "--allow-invalid-signature"

REJECTION_MESSAGE = (
    "The firmware image is unofficial, corrupted, or has been tampered with, "
    "so flashing is prohibited"
)
OVERRIDE_HINT = (
    f"If you are absolutely sure what you are doing, you can use {OVERRIDE_FLAG} "
    "to allow flashing anyway. *THIS IS NOT SAFE AND MAY BRICK THE DEVICE*"
)


@dataclass(frozen=True)
class SignaturePolicy:
    """
    Signature policy for an update run.

    Attributes:
        allow_invalid_signature: Flash even if the signature is missing,
            malformed or untrusted
    """
    allow_invalid_signature: bool = False


def require_valid_signature(archive: FirmwareArchive, policy: SignaturePolicy) -> bool:
    """
    Enforce the signature rule for an archive.

    Rules enforced:
    1. No signature: refused unless overridden (warning when overridden)
    2. Unreadable signature: refused unless overridden (warning when overridden)
    3. Signature not made by a trusted key: refused unless overridden

    Args:
        archive: Firmware archive to check
        policy: Signature policy of this run

    Returns:
        True if the signature is valid, False if the check was overridden

    Raises:
        SignatureRejectedError: If flashing is not permitted
    """
    allow = policy.allow_invalid_signature
    log_problem = logger.warning if allow else logger.error

    if not archive.has_signature():
        log_problem("The firmware image has no digital signature!")
        valid = False
    else:
        logger.debug("Validating firmware image digital signature")
        try:
            valid = archive.has_valid_signature()
        except SignatureFormatError as e:
            log_problem(f"Failed to read signature: {e}")
            valid = False
        else:
            if not valid and allow:
                logger.warning("The firmware image signature is not trusted")

    if valid or allow:
        return valid

    logger.error(REJECTION_MESSAGE)
    logger.error(OVERRIDE_HINT)
    raise SignatureRejectedError("Aborting due to invalid digital signature")
