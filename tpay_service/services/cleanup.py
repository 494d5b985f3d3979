"""
Reference cleanup across document collections.

Removing an entity (a child, say) has to strip its id out of every list
that points at it. Each ReferenceSpec names one such list:

    ReferenceSpec("classes", "children")      # ["c1", "c2", ...]
    ReferenceSpec("users", "children.id")     # [{"id": "c1", ...}, ...]

Ids are compared with exact equality.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

import structlog
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import Document

logger = structlog.get_logger(component="cleanup")


@dataclass(frozen=True)
class ReferenceSpec:
    collection: str
    field_path: str

    @property
    def list_field(self) -> str:
        return self.field_path.split(".", 1)[0]

    @property
    def key(self):
        parts = self.field_path.split(".", 1)
        return parts[1] if len(parts) > 1 else None


CHILD_REFERENCES = [
    ReferenceSpec("users", "children.id"),
    ReferenceSpec("classes", "children"),
    ReferenceSpec("groups", "children"),
    ReferenceSpec("lessons", "participants.id"),
]


def _matches(item: Any, entity_id: str, key) -> bool:
    if key is None:
        return item == entity_id
    return isinstance(item, dict) and item.get(key) == entity_id


def strip_reference(items: List[Any], entity_id: str, key=None) -> List[Any]:
    return [item for item in items if not _matches(item, entity_id, key)]


async def remove_references(session: AsyncSession, entity_id: str,
                            refs: Iterable[ReferenceSpec] = CHILD_REFERENCES) -> Dict[str, int]:
    """Strip entity_id from every referencing list; return updated-document counts per collection."""
    updated: Dict[str, int] = {}
    for ref in refs:
        count = 0
        res = await session.exec(select(Document).where(Document.collection == ref.collection))
        for doc in res.all():
            items = (doc.data or {}).get(ref.list_field) or []
            if not isinstance(items, list):
                continue
            kept = strip_reference(items, entity_id, ref.key)
            if len(kept) != len(items):
                # reassign so the JSON column is flagged dirty
                doc.data = {**doc.data, ref.list_field: kept}
                session.add(doc)
                count += 1
        updated[ref.collection] = updated.get(ref.collection, 0) + count
    await session.commit()
    logger.info("references removed", entity_id=entity_id, updated=updated)
    return updated
