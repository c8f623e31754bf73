"""
Document-type templates and the providers that supply them.

A template names a document type and the ordered chip fields to extract for
it. Templates are read-only pipeline inputs: they are provisioned elsewhere
(admin UI, migrations) and the classifier only ever reads them.

When a provider has nothing to offer, the built-in pair (``lease`` and the
generic ``misc`` fallback) keeps classification usable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

FALLBACK_TYPE = "misc"


@dataclass(frozen=True)
class DocumentTemplate:
    type_name:         str
    chip_fields:       tuple[str, ...]
    extraction_prompt: str | None = None

    def __post_init__(self) -> None:
        if not self.type_name:
            raise ValueError("Template type_name must be non-empty")
        if len(set(self.chip_fields)) != len(self.chip_fields):
            raise ValueError(f"Template {self.type_name!r} has duplicate chip fields")

    def empty_chips(self) -> dict[str, str]:
        return {name: "" for name in self.chip_fields}


LEASE_TEMPLATE = DocumentTemplate(
    type_name="lease",
    chip_fields=(
        "property_address",
        "unit_number",
        "tenant_name",
        "landlord",
        "lease_start",
        "lease_end",
        "monthly_rent",
        "security_deposit",
    ),
    extraction_prompt="Extract lease agreement details including property, parties, dates, and financial terms.",
)

MISC_TEMPLATE = DocumentTemplate(
    type_name=FALLBACK_TYPE,
    chip_fields=("document_title", "date", "parties_involved", "summary"),
    extraction_prompt="Extract general document information.",
)

DEFAULT_TEMPLATES: tuple[DocumentTemplate, ...] = (LEASE_TEMPLATE, MISC_TEMPLATE)


def with_fallback(templates: Iterable[DocumentTemplate]) -> list[DocumentTemplate]:
    """Return ``templates`` guaranteed to contain the generic fallback type."""
    resolved = list(templates) or list(DEFAULT_TEMPLATES)
    if not any(t.type_name == FALLBACK_TYPE for t in resolved):
        resolved.append(MISC_TEMPLATE)
    return resolved


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TemplateProvider(ABC):

    @abstractmethod
    async def get_templates(self) -> list[DocumentTemplate]:
        ...


class StaticTemplateProvider(TemplateProvider):
    """In-process templates; defaults to the built-in lease/misc pair."""

    def __init__(self, templates: Iterable[DocumentTemplate] | None = None) -> None:
        self._templates = with_fallback(templates or DEFAULT_TEMPLATES)

    async def get_templates(self) -> list[DocumentTemplate]:
        return list(self._templates)


class DatabaseTemplateProvider(TemplateProvider):
    """
    Reads file_type_templates. An empty table or a failed read degrades to
    the built-in templates; classification must never block ingestion.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_templates(self) -> list[DocumentTemplate]:
        from docrag.models.documents import FileTypeTemplate

        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(select(FileTypeTemplate).order_by(FileTypeTemplate.type_name))
                ).scalars().all()
        except Exception as exc:
            logger.warning("Templates | database read failed, using built-ins: %s", exc)
            return list(DEFAULT_TEMPLATES)

        templates = [
            DocumentTemplate(
                type_name=row.type_name,
                chip_fields=tuple(dict.fromkeys(row.chip_fields or ())),
                extraction_prompt=row.extraction_prompt,
            )
            for row in rows
        ]
        if not templates:
            logger.info("Templates | table empty, using built-ins")
        return with_fallback(templates)
