"""Stage 3: authority-data extraction.

Reads the tax return and assessment documents for three facets: the
fiscal entity (identity and allocation), the official per-year totals, and
the asset checklist. Two interchangeable strategies exist:

- SplitAuthorityExtractor: three concurrent calls, one per facet, so each
  call's output stays small.
- ConsolidatedAuthorityExtractor: one call returning all three facets.

Both normalize the same way. A failed facet falls back to its default and
is recorded; it never fails the other facets.
"""

import asyncio
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.exceptions import OracleError, ResponseParseError
from box3_core.json_decoder import require_json_object
from box3_core.models import AssetChecklist, FiscalEntity
from box3_core.normalization import (
    normalize_checklist,
    normalize_fiscal_entity,
    normalize_tax_authority_data,
    taxable_bases_by_person,
)

from box3_agents.config import AuthorityMode
from box3_agents.interfaces.base import ExtractionOracle, StageResult
from box3_agents.interfaces.types import AuthorityExtraction, OracleCallConfig, PreparedDocument
from box3_agents.prompts import (
    TASK_AUTHORITY,
    TASK_AUTHORITY_CHECKLIST,
    TASK_AUTHORITY_IDENTITY,
    TASK_AUTHORITY_TOTALS,
    build_authority_prompt,
    build_checklist_prompt,
    build_identity_prompt,
    build_totals_prompt,
    render_documents,
)

logger = structlog.get_logger()

STAGE_NAME = "tax_authority"

NO_AUTHORITY_DOCUMENTS = (
    "No tax return or assessment documents found; authority totals are empty"
)


def checklist_input(raw: dict[str, Any]) -> dict[str, Any]:
    """Checklist payload with category totals attached, whichever wrapper was used."""
    data = raw.get("asset_references") or raw.get("asset_checklist") or raw
    if not isinstance(data, dict):
        data = {}
    data = dict(data)
    if "category_totals" not in data and isinstance(raw.get("category_totals"), dict):
        data["category_totals"] = raw["category_totals"]
    return data


def assemble_authority(
    identity_raw: Optional[dict[str, Any]],
    totals_raw: Optional[dict[str, Any]],
    checklist_raw: Optional[dict[str, Any]],
) -> AuthorityExtraction:
    """Normalize the three facets and join them.

    The allocation split is fixed only after the join, because recomputing
    it needs the per-person taxable bases from the totals facet. A facet
    whose content fails model validation falls back to its default and is
    reported in ``errors``.
    """
    notes: list[str] = []
    errors: list[str] = []

    def facet(task: str, build: Callable[[], Any], default: Any) -> Any:
        try:
            return build()
        except ModelValidationError as e:
            logger.warning("authority_facet_invalid", task=task, errors=e.error_count())
            errors.append(f"{task}: invalid response ({e.error_count()} validation errors)")
            return default

    provisional_entity, _ = facet(
        TASK_AUTHORITY_IDENTITY, lambda: normalize_fiscal_entity(identity_raw or {}), (None, [])
    )
    if provisional_entity is None:
        identity_raw = None
        provisional_entity = FiscalEntity()
    authority, authority_notes = facet(
        TASK_AUTHORITY_TOTALS,
        lambda: normalize_tax_authority_data(totals_raw or {}, has_partner=provisional_entity.has_partner),
        ({}, []),
    )
    notes.extend(authority_notes)
    entity, entity_notes = facet(
        TASK_AUTHORITY_IDENTITY,
        lambda: normalize_fiscal_entity(identity_raw or {}, taxable_bases_by_person(authority)),
        (provisional_entity, []),
    )
    notes.extend(entity_notes)
    checklist = facet(
        TASK_AUTHORITY_CHECKLIST,
        lambda: normalize_checklist(checklist_input(checklist_raw or {})),
        AssetChecklist(),
    )
    return AuthorityExtraction(
        fiscal_entity=entity,
        tax_authority_data=authority,
        checklist=checklist,
        notes=notes,
        errors=errors,
    )


class AuthorityExtractor:
    """Shared plumbing for both strategies."""

    def __init__(self, oracle: ExtractionOracle, max_text_chars: int = 60000):
        self.oracle = oracle
        self.max_text_chars = max_text_chars

    async def extract(self, documents: list[PreparedDocument]) -> StageResult:
        """Extract authority data from the authority-facing documents."""
        if not documents:
            logger.warning("no_authority_documents")
            return StageResult.failure(
                AuthorityExtraction(errors=[NO_AUTHORITY_DOCUMENTS]),
                NO_AUTHORITY_DOCUMENTS,
                stage_name=STAGE_NAME,
            )

        payload, attachments = render_documents(documents, self.max_text_chars)
        extraction, facet_count = await self._extract(payload, attachments)

        logger.info(
            "authority_extracted",
            documents=len(documents),
            years=sorted(extraction.tax_authority_data),
            has_partner=extraction.fiscal_entity.has_partner,
            errors=len(extraction.errors),
        )
        if not extraction.errors:
            return StageResult.success(extraction, stage_name=STAGE_NAME, warnings=extraction.notes)
        message = "; ".join(extraction.errors)
        if len(extraction.errors) >= facet_count:
            return StageResult.failure(extraction, message, stage_name=STAGE_NAME, warnings=extraction.notes)
        return StageResult.partial(extraction, message, stage_name=STAGE_NAME, warnings=extraction.notes)

    async def _extract(self, payload: str, attachments: list) -> tuple[AuthorityExtraction, int]:
        raise NotImplementedError

    async def _call(
        self,
        task: str,
        prompt: str,
        attachments: list,
    ) -> tuple[Optional[dict[str, Any]], Optional[str]]:
        """One facet call; failures come back as an error string."""
        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.fast_extraction(), attachments or None)
            return require_json_object(response.text, task), None
        except (OracleError, ResponseParseError) as e:
            logger.warning("authority_facet_failed", task=task, error=str(e))
            return None, f"{task}: {e}"


class SplitAuthorityExtractor(AuthorityExtractor):
    """Identity, totals and checklist as three concurrent calls."""

    async def _extract(self, payload: str, attachments: list) -> tuple[AuthorityExtraction, int]:
        (identity, identity_error), (totals, totals_error), (checklist, checklist_error) = await asyncio.gather(
            self._call(TASK_AUTHORITY_IDENTITY, build_identity_prompt(payload), attachments),
            self._call(TASK_AUTHORITY_TOTALS, build_totals_prompt(payload), attachments),
            self._call(TASK_AUTHORITY_CHECKLIST, build_checklist_prompt(payload), attachments),
        )
        extraction = assemble_authority(identity, totals, checklist)
        errors = [e for e in (identity_error, totals_error, checklist_error) if e]
        return extraction.model_copy(update={"errors": errors + extraction.errors}), 3


class ConsolidatedAuthorityExtractor(AuthorityExtractor):
    """All three facets from a single call."""

    async def _extract(self, payload: str, attachments: list) -> tuple[AuthorityExtraction, int]:
        data, error = await self._call(TASK_AUTHORITY, build_authority_prompt(payload), attachments)
        if error:
            return assemble_authority(None, None, None).model_copy(update={"errors": [error]}), 1
        # A decoded response can still fail per facet
        return assemble_authority(data, data, data), 3


AUTHORITY_STRATEGIES: dict[AuthorityMode, Callable[..., AuthorityExtractor]] = {
    AuthorityMode.SPLIT: SplitAuthorityExtractor,
    AuthorityMode.CONSOLIDATED: ConsolidatedAuthorityExtractor,
}


def create_authority_extractor(
    mode: AuthorityMode,
    oracle: ExtractionOracle,
    max_text_chars: int = 60000,
) -> AuthorityExtractor:
    return AUTHORITY_STRATEGIES[mode](oracle, max_text_chars=max_text_chars)
