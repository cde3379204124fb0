# scripts/sign_payment_event.py
import argparse
import os
import uuid

import httpx

from lotpass.security import sign_payment_notification


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a signed payment outcome to the webhook")
    parser.add_argument("--registration-id", required=True)
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--outcome", choices=["succeeded", "failed"], default="succeeded")
    parser.add_argument("--base-url", default=os.environ.get("BASE_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--print-only", action="store_true", help="print body and signature instead of sending")
    args = parser.parse_args()

    secret = os.environ.get("PAYMENT_WEBHOOK_SECRET", "dev_webhook_secret_change_me")
    notification = {
        "id": f"evt_{uuid.uuid4().hex}",
        "type": f"payment.{args.outcome}",
        "registration_id": args.registration_id,
        "payment_id": args.payment_id or f"pi_{uuid.uuid4().hex[:16]}",
    }
    body, signature = sign_payment_notification(notification, secret)

    if args.print_only:
        print(body.decode("utf-8"))
        print(signature)
        return

    r = httpx.post(
        f"{args.base_url}/webhooks/payments",
        content=body,
        headers={"Content-Type": "application/json", "Processor-Signature": signature},
        timeout=5.0,
    )
    print(r.status_code, r.text)


if __name__ == "__main__":
    main()
