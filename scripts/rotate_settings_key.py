#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from relay_web.cipher import CipherError, SettingsCipher  # noqa: E402
from relay_web.config import get_settings  # noqa: E402
from relay_web.settings_store import SMS_AUTH_TOKEN_KEY, create_settings_repository  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Re-encrypt every stored SMS auth token under SETTINGS_ENCRYPTION_KEY_VERSION. "
            "Older versions must be listed in SETTINGS_ENCRYPTION_PREVIOUS_KEYS."
        )
    )
    parser.add_argument(
        "--legacy-version",
        default=None,
        help="Key version to assume for values stored without a version tag (default: the active version).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which rows would be rotated without writing them.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    cipher = SettingsCipher.from_settings(settings)
    repository = create_settings_repository(backend=settings.store_backend, database_url=settings.database_url)

    rotated: list[str] = []
    skipped: list[str] = []
    failed: list[dict[str, str]] = []
    for stored in repository.list_by_key(SMS_AUTH_TOKEN_KEY):
        value = str(stored.value or "").strip()
        if not value or not cipher.needs_rotation(value):
            skipped.append(stored.user_id)
            continue
        if args.legacy_version and "$" not in value:
            value = f"{args.legacy_version}${value}"
        try:
            plaintext = cipher.decrypt(value)
        except CipherError as exc:
            failed.append({"user_id": stored.user_id, "error": str(exc)})
            continue
        if not args.dry_run:
            repository.upsert_values(stored.user_id, {SMS_AUTH_TOKEN_KEY: cipher.encrypt(plaintext)})
        rotated.append(stored.user_id)

    print(
        json.dumps(
            {
                "active_version": cipher.primary_version,
                "dry_run": args.dry_run,
                "rotated": rotated,
                "skipped": skipped,
                "failed": failed,
            },
            indent=2,
        )
    )
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
