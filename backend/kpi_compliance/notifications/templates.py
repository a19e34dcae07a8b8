import html
import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_RELATIVE = Path("config") / "email_templates.yaml"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_SPACE = re.compile(r"\s+")


@dataclass
class EmailTemplate:
    key: str
    subject: str
    body: str

    def placeholders(self) -> List[str]:
        names: List[str] = []
        for m in _PLACEHOLDER.finditer(self.subject + self.body):
            if m.group(1) not in names:
                names.append(m.group(1))
        return names


def _resolve_templates_path() -> Path:
    env_path = os.getenv("EMAIL_TEMPLATES_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    here = Path(__file__).resolve()
    candidates = [
        here.parents[3] / DEFAULT_TEMPLATES_RELATIVE,
        Path.cwd() / DEFAULT_TEMPLATES_RELATIVE,
    ]
    for c in candidates:
        if c.exists():
            return c
    return candidates[0]


@lru_cache(maxsize=1)
def load_email_templates() -> Dict[str, EmailTemplate]:
    path = _resolve_templates_path()
    if not path.exists():
        raise FileNotFoundError(f"Email templates not found at: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    templates = {
        key: EmailTemplate(key=key, subject=str(t.get("subject", "")), body=str(t.get("body", "")))
        for key, t in (data.get("templates") or {}).items()
    }
    logger.info("Loaded %s email templates from %s", len(templates), path)
    return templates


def get_template(key: str) -> EmailTemplate:
    templates = load_email_templates()
    if key not in templates:
        raise ValueError(f"Unknown email template: {key}")
    return templates[key]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(v) for v in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_text(text: str, variables: Mapping[str, Any], template_key: str = "", escape: bool = False) -> str:
    """Substitute {{name}} placeholders; unknown names become empty strings.

    With escape=True values are HTML-escaped, for substitution into HTML bodies.
    """

    def _sub(m: "re.Match") -> str:
        name = m.group(1)
        if name not in variables:
            logger.warning("Template %s: missing variable %s", template_key or "<inline>", name)
            return ""
        value = _stringify(variables[name])
        return html.escape(value) if escape else value

    return _PLACEHOLDER.sub(_sub, text)


def render(key: str, variables: Mapping[str, Any]) -> Tuple[str, str]:
    template = get_template(key)
    return render_text(template.subject, variables, key), render_text(template.body, variables, key, escape=True)


def html_to_text(markup: str, limit: int = 0) -> str:
    text = BeautifulSoup(markup or "", "html.parser").get_text(" ", strip=True)
    text = _SPACE.sub(" ", text)
    if limit and len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text
