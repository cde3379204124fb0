import json
import uuid
from datetime import datetime, timezone

from jose import jws, jwt
from jose.exceptions import JOSEError, JWTError


def mint_checkin_token(registration_id: str, event_id: str, vehicle_id: str, secret: str) -> str:
    payload = {
        "registration_id": registration_id,
        "event_id": event_id,
        "vehicle_id": vehicle_id,
        "nonce": str(uuid.uuid4()),
        "iat": int(datetime.now(timezone.utc).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_checkin_token(qr_code_data: str, secret: str) -> dict:
    try:
        payload = jwt.decode(qr_code_data, secret, algorithms=["HS256"])
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    # Required claims
    for k in ["registration_id", "event_id", "nonce"]:
        if k not in payload:
            raise ValueError("INVALID_TOKEN")

    return payload


def sign_payment_notification(notification: dict, secret: str) -> tuple[bytes, str]:
    """Return the request body and the ``Processor-Signature`` header for it."""
    body = json.dumps(notification, separators=(",", ":")).encode("utf-8")
    return body, jws.sign(body, secret, algorithm="HS256")


def verify_payment_notification(body: bytes, signature: str | None, secret: str) -> dict:
    """The signature is a compact JWS whose payload must be the exact body."""
    if not signature:
        raise ValueError("INVALID_SIGNATURE")
    try:
        signed = jws.verify(signature, secret, algorithms=["HS256"])
    except JOSEError:
        raise ValueError("INVALID_SIGNATURE")
    if signed != body:
        raise ValueError("INVALID_SIGNATURE")

    try:
        notification = json.loads(body)
    except ValueError:
        raise ValueError("INVALID_SIGNATURE")
    for k in ["id", "type"]:
        if k not in notification:
            raise ValueError("INVALID_SIGNATURE")
    return notification
