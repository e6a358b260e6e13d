"""
Mail provider payload models.

Thin dataclasses over the provider's JSON-LD message resources.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


def _address(value: Any) -> str:
    """Provider sends {'address': ..., 'name': ...}; tolerate a bare string."""
    if isinstance(value, dict):
        return value.get("address", "")
    return value or ""


@dataclass
class MessageSummary:
    """One entry of the inbox listing."""

    id: str
    from_address: str
    subject: str
    created_at: Optional[str] = None
    seen: bool = False
    has_attachments: bool = False
    intro: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MessageSummary":
        return cls(
            id=data["id"],
            from_address=_address(data.get("from")),
            subject=data.get("subject") or "",
            created_at=data.get("createdAt"),
            seen=bool(data.get("seen", False)),
            has_attachments=bool(data.get("hasAttachments") or data.get("attachments")),
            intro=data.get("intro") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MessageDetail:
    """A full message as returned by GET /messages/{id}."""

    id: str
    from_address: str
    subject: str
    created_at: Optional[str] = None
    text: str = ""
    html: List[str] = field(default_factory=list)
    to: List[str] = field(default_factory=list)
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MessageDetail":
        html = data.get("html") or []
        if isinstance(html, str):
            html = [html]
        return cls(
            id=data["id"],
            from_address=_address(data.get("from")),
            subject=data.get("subject") or "",
            created_at=data.get("createdAt"),
            text=data.get("text") or "",
            html=html,
            to=[_address(r) for r in data.get("to") or []],
            attachments=data.get("attachments") or [],
        )

    @property
    def body(self) -> str:
        """Plain text when present, otherwise the first HTML part."""
        return self.text or (self.html[0] if self.html else "")
