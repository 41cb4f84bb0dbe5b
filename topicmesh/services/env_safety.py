from __future__ import annotations

import os
from pathlib import Path

CA_BUNDLE_VARS = ("SSL_CERT_FILE", "REQUESTS_CA_BUNDLE")


def sanitize_tls_environment() -> list[str]:
    """Drop TLS-related env vars that point to unusable paths.

    httpx reads SSLKEYLOGFILE and SSL_CERT_FILE while building its SSL
    context; a dangling path there turns every search call into a crash.
    Returns the names of the variables that were removed.
    """
    removed: list[str] = []

    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if keylog_path and not _is_writable(Path(keylog_path)):
        os.environ.pop("SSLKEYLOGFILE", None)
        removed.append("SSLKEYLOGFILE")

    for name in CA_BUNDLE_VARS:
        value = os.getenv(name, "").strip()
        if value and not Path(value).is_file():
            os.environ.pop(name, None)
            removed.append(name)

    return removed


def _is_writable(path: Path) -> bool:
    try:
        if not path.parent.exists():
            return False
        # Append mode validates access without truncating.
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        return False
    return True
