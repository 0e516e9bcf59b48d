"""Survey gate: one response per bib, required before checkout."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import UpstreamError, ValidationError
from ..helpers import is_valid_email, now_ts, to_iso
from ..infra.sql import Gated
from .access import AccessLedger
from .orm import SurveyResponse
from .photos import require_owned

logger = logging.getLogger(__name__)

REQUIRED_ANSWERS = (
    "runner_name",
    "runner_email",
    "social_media_preference",
    "waiting_stops_buying",
)


@dataclass
class SurveyResult:
    already_completed: bool
    response: Optional[SurveyResponse] = None
    warning: Optional[str] = None

    def as_dict(self) -> dict:
        if self.already_completed:
            return {
                "message": "Survey already completed",
                "redirect_to_payment": True,
            }
        out = survey_to_dict(self.response)
        out["redirect_to_payment"] = True
        if self.warning:
            out["warning"] = self.warning
        return out


def survey_to_dict(row: SurveyResponse) -> dict:
    return {
        "id": row.id,
        "bib_number": row.bib_number,
        "selected_photo_ids": list(row.selected_photo_ids or []),
        "runner_name": row.runner_name,
        "runner_email": row.runner_email,
        "social_media_preference": row.social_media_preference,
        "waiting_stops_buying": row.waiting_stops_buying,
        "marketing_consent": row.marketing_consent,
        "completed_at": to_iso(row.completed_at),
    }


def clean_answers(answers: dict) -> dict:
    out = {}
    for key in REQUIRED_ANSWERS:
        value = answers.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Missing required fields")
        out[key] = value.strip()
    if not is_valid_email(out["runner_email"]):
        raise ValidationError("runner_email must be a valid email address")
    out["marketing_consent"] = bool(answers.get("marketing_consent", False))
    return out


async def survey_for(db: AsyncSession, bib: str) -> Optional[SurveyResponse]:
    return (await db.execute(
        select(SurveyResponse).where(SurveyResponse.bib_number == bib)
    )).scalars().first()


class SurveyGate:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, ledger: AccessLedger
    ) -> None:
        self.db = db
        self.gated = gated
        self.ledger = ledger

    async def submit(
        self, bib: str, selected_photo_ids: List[str], answers: dict
    ) -> SurveyResult:
        if not selected_photo_ids:
            raise ValidationError("Missing required fields")
        fields = clean_answers(answers)

        try:
            async with self.gated():
                async with self.db.begin():
                    await require_owned(
                        self.db, bib, selected_photo_ids, active_only=False
                    )
                    if await survey_for(self.db, bib) is not None:
                        return SurveyResult(already_completed=True)
                    row = SurveyResponse(
                        id=uuid.uuid4().hex,
                        bib_number=bib,
                        selected_photo_ids=list(selected_photo_ids),
                        completed_at=now_ts(),
                        **fields,
                    )
                    self.db.add(row)
        except IntegrityError:
            # a concurrent submission for the same bib won the unique key
            logger.info("survey for bib %s raced; already completed", bib)
            return SurveyResult(already_completed=True)
        except SQLAlchemyError:
            logger.exception("survey save failed for bib %s", bib)
            raise UpstreamError("Failed to save survey response")

        result = SurveyResult(already_completed=False, response=row)
        # the saved response is authoritative; the per-photo flag is a mirror
        try:
            await self.ledger.mark_surveyed(bib, selected_photo_ids)
        except SQLAlchemyError:
            logger.exception("marking survey on access rows failed bib=%s",
                             bib)
            result.warning = "survey saved; photo access update pending"
        return result

    async def is_completed(self, bib: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                return await survey_for(self.db, bib) is not None

    async def get(self, bib: str) -> Optional[SurveyResponse]:
        async with self.gated():
            async with self.db.begin():
                return await survey_for(self.db, bib)
