"""
VIP override list.

Loaded once at startup from VIP_EMAILS (comma separated) and, optionally,
VIP_EMAILS_FILE (one email per line, '#' comments allowed). Read-only after load.
"""

import logging
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

from captionai.features.entitlements.identity import try_normalize_identity


logger = logging.getLogger(__name__)


def parse_vip_entries(entries: Iterable[str]) -> FrozenSet[str]:
    vips = set()
    for raw in entries:
        entry = raw.split("#", 1)[0].strip()
        if not entry:
            continue
        identity = try_normalize_identity(entry)
        if identity is None:
            logger.warning("[vip] ignoring invalid entry", extra={"entry": entry[:80]})
            continue
        vips.add(identity)
    return frozenset(vips)


def load_vip_set(emails: str = "", path: Optional[str] = None) -> FrozenSet[str]:
    """Build the immutable VIP set from the configured sources."""
    entries = list(emails.split(",")) if emails else []
    if path:
        file_path = Path(path)
        if file_path.is_file():
            entries.extend(file_path.read_text(encoding="utf-8").splitlines())
        else:
            logger.warning("[vip] VIP_EMAILS_FILE not found", extra={"path": path})
    vips = parse_vip_entries(entries)
    logger.info("[vip] loaded VIP list", extra={"count": len(vips)})
    return vips
