"""Case repository. Cases are created and edited outside the AI core; the core only reads them."""
from typing import Optional

from caseai.core.errors import NotFoundError, ValidationError
from caseai.core.logging import get_logger
from caseai.models.entities import Case, CaseNote, utcnow
from caseai.storage.store import Store

logger = get_logger(__name__)


class SqlCaseRepository:
    def __init__(self, store: Store):
        self.store = store

    async def get_case(self, case_id: str) -> Optional[Case]:
        async with self.store.transaction() as tx:
            return await tx.get_case(case_id)

    async def save_case(self, case: Case) -> Case:
        case = case.model_copy(update={"updated_at": utcnow()})
        async with self.store.transaction() as tx:
            await tx.save_case(case)
        logger.info("case_saved", case_id=case.id, status=case.status.value, step=case.current_step.value)
        return case

    async def add_note(self, case_id: str, content: str, author: str) -> CaseNote:
        if not content or not content.strip():
            raise ValidationError("Note content must not be empty")
        note = CaseNote(case_id=case_id, content=content, created_by=author)
        async with self.store.transaction() as tx:
            if not await tx.case_exists(case_id):
                raise NotFoundError("Case", case_id)
            await tx.add_note(note)
        logger.info("case_note_added", case_id=case_id, note_id=note.id)
        return note
