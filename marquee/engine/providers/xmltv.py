"""XMLTV programme guide parsing."""
from __future__ import annotations

import io
import logging
from datetime import datetime, timezone

from lxml import etree

from ..schemas import ProgramModel

logger = logging.getLogger(__name__)


def parse_xmltv_time(value: str | None) -> datetime | None:
    """Parse ``20240101120000 +0000`` into a naive UTC datetime."""

    if not value:
        return None
    value = value.strip()
    for fmt in ("%Y%m%d%H%M%S %z", "%Y%m%d%H%M%S"):
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def parse_xmltv(data: bytes, provider_id: str) -> list[ProgramModel]:
    """Return programmes with ``channel_id`` set to the XMLTV channel id."""

    if not data.strip():
        return []
    parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)
    tree = etree.parse(io.BytesIO(data), parser)
    root = tree.getroot()
    if root is None:
        return []

    programs: list[ProgramModel] = []
    for element in root.iter("programme"):
        channel = element.get("channel")
        start = parse_xmltv_time(element.get("start"))
        if not channel or start is None:
            continue
        title = (element.findtext("title") or "").strip()
        if not title:
            continue
        description = (element.findtext("desc") or "").strip() or None
        programs.append(
            ProgramModel(
                provider_id=provider_id,
                channel_id=channel,
                start_ts=start,
                stop_ts=parse_xmltv_time(element.get("stop")),
                title=title,
                description=description,
            )
        )
    logger.debug("[%s] Parsed %d programmes", provider_id, len(programs))
    return programs
