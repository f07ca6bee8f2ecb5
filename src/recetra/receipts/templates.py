"""
Receipt template catalog.

Templates are owned by the admin template-management screens; the lifecycle
engine only reads them to pick a layout for outgoing messages.
"""

from datetime import UTC, datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from recetra.receipts.exceptions import TemplateNotFoundError


class ReceiptTemplate(BaseModel):
    """Layout definition for a printed or delivered receipt."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    organization: str | None = None
    template_type: str = Field("Standard", description="Standard, Event or Donation")
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TemplateCatalog(Protocol):
    def get(self, template_id: str) -> ReceiptTemplate: ...  # pragma: no cover - protocol definition


DEFAULT_TEMPLATES = (
    ReceiptTemplate(
        id="1",
        name="Standard Receipt",
        description="Standard receipt template for general use",
        organization="Computer Science Society",
        template_type="Standard",
    ),
    ReceiptTemplate(
        id="2",
        name="Event Receipt",
        description="Specialized template for event registrations",
        organization="Student Council",
        template_type="Event",
    ),
    ReceiptTemplate(
        id="3",
        name="Donation Receipt",
        description="Template for donation receipts",
        organization="Engineering Society",
        template_type="Donation",
    ),
)


class InMemoryTemplateCatalog:
    """Template catalog held in memory."""

    def __init__(self, templates: tuple[ReceiptTemplate, ...] | list[ReceiptTemplate] = DEFAULT_TEMPLATES):
        self._templates = {template.id: template for template in templates}

    def get(self, template_id: str) -> ReceiptTemplate:
        template = self._templates.get(template_id)
        if template is None or not template.is_active:
            raise TemplateNotFoundError(
                f"Template {template_id} not found", template_id=template_id
            )
        return template

    def add(self, template: ReceiptTemplate) -> None:
        self._templates[template.id] = template
