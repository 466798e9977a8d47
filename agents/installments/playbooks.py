"""Jinja2 rendering of notification messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from backend.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_ROOT = Path(__file__).resolve().parent / "templates"
CATALOG_FILE = TEMPLATE_ROOT / "catalog.yaml"
COLLEGE_DIGEST = "college_digest"


@dataclass(frozen=True)
class RenderedMessage:
    template: str
    subject: str | None
    body: str


def money(amount: Any) -> str:
    """Format an amount as ``$1,234.50`` (half-up to cents)."""
    if amount is None:
        return "$0.00"
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"${value:,.2f}"


def datefmt(date_obj: Any, format_str: str = "%d %b %Y") -> str:
    if hasattr(date_obj, "strftime"):
        return date_obj.strftime(format_str)
    return str(date_obj)


def load_catalog(path: Path = CATALOG_FILE) -> dict[str, dict[str, dict[str, str]]]:
    """Load the (type -> channel -> template/subject) catalog."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"invalid template catalog: {path}")
    return data


class TemplateEngine:
    """Renders per-type, per-channel messages.

    Lookup order is ``<override root>/<agency_id>/`` (when
    ``NOTIFY_TEMPLATE_DIR`` or ``override_root`` is set), then the packaged
    ``templates/default/``. A missing template is an error, never a silent
    fallback to inline text.
    """

    def __init__(self, override_root: str | Path | None = None, catalog: dict | None = None):
        root = override_root if override_root is not None else settings.NOTIFY_TEMPLATE_DIR
        self.override_root = Path(root) if root else None
        self.catalog = catalog if catalog is not None else load_catalog()
        self._envs: dict[str, Environment] = {}

    def _env(self, agency_id: str) -> Environment:
        env = self._envs.get(agency_id)
        if env is not None:
            return env
        search_path = []
        if self.override_root is not None:
            search_path.append(str(self.override_root / agency_id))
        search_path.append(str(TEMPLATE_ROOT / "default"))
        env = Environment(
            loader=FileSystemLoader(search_path),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["money"] = money
        env.filters["datefmt"] = datefmt
        self._envs[agency_id] = env
        return env

    def render(self, agency_id: str, kind: str, channel: str, context: dict[str, Any]) -> RenderedMessage:
        """Render one message.

        Args:
            agency_id: Agency whose override directory is searched first
            kind: Notification type value or ``college_digest``
            channel: Channel value (``email`` / ``sms``)
            context: Template variables

        Raises:
            FileNotFoundError: If the catalog or loader has no template
        """
        entry = self.catalog.get(kind, {}).get(channel)
        if not entry:
            raise FileNotFoundError(f"no template configured for {kind}/{channel}")
        env = self._env(agency_id)
        try:
            template = env.get_template(entry["template"])
        except TemplateNotFound as exc:
            raise FileNotFoundError(f"template {entry['template']!r} not found for agency {agency_id}") from exc
        logger.debug(
            "template_resolved",
            extra={"agency_id": agency_id, "template_path": template.filename, "kind": kind, "channel": channel},
        )
        body = template.render(**context).strip() + "\n"
        subject = None
        if entry.get("subject"):
            subject = env.from_string(entry["subject"]).render(**context).strip()
        return RenderedMessage(template=entry["template"], subject=subject, body=body)
