"""Print fresh secrets for the reminder engine.

    python -m app.scripts.generate_reminder_keys
"""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_vapid_keys() -> tuple[str, str]:
    """Return ``(public, private)`` in the raw base64url form browsers and pywebpush expect."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_raw = private_key.private_numbers().private_value.to_bytes(32, "big")
    public_raw = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return _b64url(public_raw), _b64url(private_raw)


def render() -> str:
    public, private = generate_vapid_keys()
    return (
        "\nGenerated Smart Reminder Secrets\n"
        "================================\n\n"
        f"REMINDER_ENCRYPTION_KEY={Fernet.generate_key().decode('ascii')}\n"
        f"WEB_PUSH_VAPID_PUBLIC_KEY={public}\n"
        f"WEB_PUSH_VAPID_PRIVATE_KEY={private}\n\n"
        "Next steps:\n"
        "1. Store these values securely.\n"
        "2. Set them as environment variables on every backend and worker instance.\n"
        "3. Redeploy.\n"
    )


if __name__ == "__main__":  # pragma: no cover
    print(render())
