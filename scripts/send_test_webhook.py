#!/usr/bin/env python3
"""
Dev helper: send a signed test webhook to the local SignVault backend.

Builds a completion event in the chosen provider's payload format, signs the
exact body bytes the way that provider does, and POST-s it to
/webhooks/<provider>.

Usage
-----
# DocuSign envelope-completed for envelope "env-123"
python scripts/send_test_webhook.py --provider docusign --document-id env-123 --account-id 1a2b3c

# SignNow, non-terminal event (should be acknowledged and ignored)
python scripts/send_test_webhook.py --provider signnow --event document.viewed

# PandaDoc without a signature
python scripts/send_test_webhook.py --provider pandadoc --unsigned

# Print the payload and signature without sending
python scripts/send_test_webhook.py --provider docusign --dry-run

Environment / .env
------------------
DOCUSIGN_WEBHOOK_SECRET, SIGNNOW_WEBHOOK_SECRET, PANDADOC_WEBHOOK_SECRET
    Signing secret for the selected provider. Overridden by --secret.
"""

import argparse
import base64
import hashlib
import hmac
import json
import os
import sys
import textwrap
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_docusign_payload(event: str, document_id: str, account_id: Optional[str]) -> dict:
    """DocuSign Connect JSON (SIM) shape."""
    return {
        "event": event,
        "apiVersion": "v2.1",
        "data": {
            "accountId": account_id,
            "envelopeId": document_id,
            "envelopeSummary": {"status": "completed"},
        },
    }


def _build_signnow_payload(event: str, document_id: str, account_id: Optional[str]) -> dict:
    """SignNow v2 event subscription shape."""
    return {
        "meta": {"event": event, "timestamp": 1735689600},
        "content": {"document_id": document_id, "user_id": account_id},
    }


def _build_pandadoc_payload(event: str, document_id: str, account_id: Optional[str]) -> list:
    """PandaDoc delivers a list of events."""
    return [
        {
            "event": "document_state_changed",
            "data": {
                "id": document_id,
                "status": event,
                "created_by": {"id": account_id},
            },
        }
    ]


_PROVIDERS = {
    # provider: (payload builder, default completion event)
    "docusign": (_build_docusign_payload, "envelope-completed"),
    "signnow": (_build_signnow_payload, "document.complete"),
    "pandadoc": (_build_pandadoc_payload, "document.completed"),
}


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def _sign(provider: str, secret: str, body: bytes) -> tuple[dict, dict]:
    """Return (headers, query params) carrying the provider's signature."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if provider == "docusign":
        return {"X-DocuSign-Signature-1": base64.b64encode(digest).decode("ascii")}, {}
    if provider == "signnow":
        return {"X-SignNow-Signature": digest.hex()}, {}
    return {}, {"signature": digest.hex()}


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description=textwrap.dedent("""\
            Send a signed test webhook to the SignVault backend.

            Reads <PROVIDER>_WEBHOOK_SECRET from the environment or a .env
            file in the project root.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--provider", required=True, choices=list(_PROVIDERS))
    parser.add_argument("--event", default=None,
                        help="Event type (default: the provider's completion event)")
    parser.add_argument("--document-id", default="test-document-1")
    parser.add_argument("--account-id", default=None,
                        help="External account id the document belongs to")
    parser.add_argument("--secret", default=None, metavar="SECRET",
                        help="Override <PROVIDER>_WEBHOOK_SECRET")
    parser.add_argument("--unsigned", action="store_true",
                        help="Send without a signature")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the payload and signature without sending it.")
    args = parser.parse_args()

    builder, default_event = _PROVIDERS[args.provider]
    payload = builder(args.event or default_event, args.document_id, args.account_id)
    body = json.dumps(payload).encode("utf-8")

    headers, params = {}, {}
    if not args.unsigned:
        secret = args.secret or os.getenv(f"{args.provider.upper()}_WEBHOOK_SECRET", "")
        if not secret:
            print(
                f"ERROR: No webhook secret found. Set {args.provider.upper()}_WEBHOOK_SECRET, "
                "pass --secret, or use --unsigned.",
                file=sys.stderr,
            )
            return 1
        headers, params = _sign(args.provider, secret, body)

    endpoint = f"{args.url.rstrip('/')}/webhooks/{args.provider}"
    print(f"Provider : {args.provider}")
    print(f"Endpoint : {endpoint}")
    print(f"Document : {args.document_id}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        print(f"Headers: {headers}  Query: {params}")
        return 0

    try:
        response = httpx.post(
            endpoint,
            content=body,
            params=params,
            headers={"Content-Type": "application/json", **headers},
            timeout=30,
        )
    except httpx.HTTPError as e:
        print(f"\n[FAIL] Could not reach {endpoint}: {e}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
