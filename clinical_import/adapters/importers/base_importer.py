"""Base class shared by the four format importers.

``BaseImporter.import_content`` is a template method: it rejects empty
content, runs the format-specific ``_parse`` step, converts every exception
into a structured issue, applies the observation limit and assembles the
ImportStructure. Subclasses only implement ``_parse`` and use the entity
builders below, which normalize source spellings, enrich values through the
concept lookup and validate them inline.

Security Impact:
    - Importers never raise: malformed content is reported, never propagated
    - Each entity is built inside its own try/except so one bad record
      cannot abort the rest of the file
    - Rejected records are logged with context but values are truncated
"""

import json
import logging
from abc import abstractmethod
from datetime import date
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from clinical_import.domain.entities import ClinicalData, Observation, Patient, Visit
from clinical_import.domain.enums import AdmissionClass, ImportFormat, ObservationCategory, ValueType
from clinical_import.domain.import_structure import (
    IdAllocator,
    ImportContext,
    ImportIssue,
    ImportOptions,
    ImportStructure,
    utc_timestamp,
)
from clinical_import.domain.item_types import ItemTypeFallback, KeywordItemTypeFallback
from clinical_import.domain.normalization import (
    boolean_to_text,
    determine_category,
    infer_value_type,
    normalize_date,
    parse_date,
    parse_numeric,
)
from clinical_import.domain.payloads import MedicationPayload, QuestionnairePayload, parse_payload_json
from clinical_import.domain.ports import (
    ConceptMetadata,
    ConceptRepository,
    ContentParseError,
    FormatImporter,
    StructureError,
)
from clinical_import.adapters.importers.questionnaire import build_questionnaire_payload
from clinical_import.validators.data_validator import DataValidator

logger = logging.getLogger(__name__)


def _truncate_for_logging(value: Any, max_length: int = 80) -> str:
    text = str(value)
    return text if len(text) <= max_length else f"{text[:max_length]}..."


def _issue_message(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc']) or 'record'}: {item['msg']}"
        for item in error.errors()
    )


class ImportSession:
    """Collects issues, metadata and ids for one import run."""

    def __init__(self, context: ImportContext, options: ImportOptions):
        self.context = context
        self.options = options
        self.errors: list[ImportIssue] = []
        self.warnings: list[ImportIssue] = []
        self.metadata: dict[str, Any] = {}
        self.concepts: dict[str, Optional[ConceptMetadata]] = {}

    @property
    def ids(self) -> IdAllocator:
        return self.context.ids

    def error(self, code: str, message: str, **kwargs: Any) -> None:
        self.errors.append(ImportIssue.error(code, message, **kwargs))

    def warning(self, code: str, message: str, **kwargs: Any) -> None:
        self.warnings.append(ImportIssue.warning(code, message, **kwargs))


class BaseImporter(FormatImporter):
    """Template for format importers.

    Parameters:
        concept_repository: Concept lookup used for value type, unit and
            category enrichment (optional)
        validator: DataValidator applied inline to numeric values and ages
            (optional)
        item_type_fallback: Guesser for questionnaire items without a type
    """

    format: ImportFormat
    source_system: str = "IMPORT"

    def __init__(
        self,
        concept_repository: Optional[ConceptRepository] = None,
        validator: Optional[DataValidator] = None,
        item_type_fallback: Optional[ItemTypeFallback] = None,
    ):
        self.concept_repository = concept_repository
        self.validator = validator
        self.item_type_fallback = item_type_fallback or KeywordItemTypeFallback()

    # ------------------------------------------------------------------
    # Template method
    # ------------------------------------------------------------------

    def import_content(
        self,
        content: str,
        options: Optional[Union[ImportOptions, dict]] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        context = context or ImportContext(format=self.format)
        if not isinstance(options, ImportOptions):
            try:
                options = ImportOptions.model_validate(options or {})
            except PydanticValidationError as e:
                return ImportStructure.failure(
                    "INVALID_OPTIONS", "Import options are invalid", details=_issue_message(e),
                    metadata={"importDate": utc_timestamp(), "format": self.format.value},
                )
        metadata = {
            "importDate": utc_timestamp(),
            "format": self.format.value,
            "filename": context.filename or None,
            "sourceSystem": self.source_system,
        }
        if options.context:
            metadata["context"] = options.context

        if not isinstance(content, str) or not content.strip():
            return ImportStructure.failure(
                "INVALID_CONTENT", "Content must be a non-empty string", metadata=metadata
            )

        session = ImportSession(context, options)
        data: Optional[ClinicalData] = None
        try:
            data = self._parse(content, session)
        except StructureError as e:
            session.error(e.code, str(e), details=e.details, field=e.field)
        except ContentParseError as e:
            session.error(e.code, str(e), details=e.details)
        except Exception as e:
            logger.error(f"{self.format.value} import failed: {e}", exc_info=True)
            session.error("IMPORT_ERROR", f"{self.format.value.upper()} import failed", details=str(e))

        if data is not None and not session.errors:
            data = self._apply_limit(data, session)
            metadata["counts"] = data.counts()
        else:
            data = None

        metadata.update(session.metadata)
        logger.info(
            f"{self.format.value} import finished: "
            f"{len(session.errors)} errors, {len(session.warnings)} warnings",
            extra={"import_file": context.filename, "counts": metadata.get("counts")},
        )
        return ImportStructure.build(data, session.errors, session.warnings, metadata)

    @abstractmethod
    def _parse(self, content: str, session: ImportSession) -> Optional[ClinicalData]:
        """Parse non-empty content into clinical data.

        Report recoverable problems through ``session`` and raise
        StructureError or ContentParseError for fatal ones.
        """
        pass

    def _apply_limit(self, data: ClinicalData, session: ImportSession) -> ClinicalData:
        limit = session.options.limit
        if limit is None or len(data.observations) <= limit:
            return data
        session.warning(
            "LIMIT_APPLIED",
            f"Kept {limit} of {len(data.observations)} observations",
            context={"limit": limit, "total": len(data.observations)},
        )
        return data.model_copy(update={"observations": data.observations[:limit]})

    # ------------------------------------------------------------------
    # Concept enrichment
    # ------------------------------------------------------------------

    def lookup_concept(self, concept_code: str, session: ImportSession) -> Optional[ConceptMetadata]:
        """Look up a concept once per run. Lookup failures become warnings."""
        if self.concept_repository is None or not concept_code:
            return None
        if concept_code in session.concepts:
            return session.concepts[concept_code]
        try:
            concept = self.concept_repository.find_by_concept_code(concept_code)
        except Exception as e:
            logger.warning(f"Concept lookup failed for {concept_code}: {e}")
            session.warning(
                "CONCEPT_LOOKUP_FAILED", f"Could not look up concept {concept_code}", details=str(e)
            )
            concept = None
        else:
            if concept is None:
                session.warning(
                    "UNKNOWN_CONCEPT",
                    f"Concept {concept_code} is not known; value type inferred from the value",
                    field=concept_code,
                )
        session.concepts[concept_code] = concept
        return concept

    # ------------------------------------------------------------------
    # Entity builders
    # ------------------------------------------------------------------

    def build_patient(
        self,
        session: ImportSession,
        external_identifier: Any,
        sex: Any = None,
        birth_date: Any = None,
        age_in_years: Any = None,
        location: Optional[dict] = None,
    ) -> Optional[Patient]:
        """Build a patient, dropping (with a warning) fields that don't validate."""
        location = location or {}
        birth = parse_date(birth_date)
        if birth_date not in (None, "") and birth is None:
            session.warning(
                "INVALID_DATE", f"Unreadable birth date {_truncate_for_logging(birth_date)!r} ignored",
                field="BIRTH_DATE", context=location,
            )

        age = None
        if age_in_years not in (None, ""):
            age = self.checked_number(session, age_in_years, "AGE_IN_YEARS", location)

        try:
            return Patient(
                local_id=session.ids.next_patient_id(),
                external_identifier=external_identifier,
                sex=sex,
                birth_date=birth,
                age_in_years=int(age) if age is not None else None,
                source_system=self.source_system,
            )
        except PydanticValidationError as e:
            self._reject(session, "INVALID_PATIENT", "Patient record rejected", e, location)
            return None

    def build_visit(
        self,
        session: ImportSession,
        patient_ref: int,
        start_date: Any,
        end_date: Any = None,
        location: Optional[str] = None,
        admission_class: Any = None,
        where: Optional[dict] = None,
    ) -> Optional[Visit]:
        """Build a visit. A visit without a readable start date is skipped with a warning."""
        where = where or {}
        start = parse_date(start_date)
        if start is None:
            session.warning(
                "INVALID_DATE",
                f"Visit skipped: unreadable start date {_truncate_for_logging(start_date)!r}",
                field="START_DATE", context=where,
            )
            return None
        end = parse_date(end_date)
        if end_date not in (None, "") and end is None:
            session.warning(
                "INVALID_DATE", f"Unreadable end date {_truncate_for_logging(end_date)!r} ignored",
                field="END_DATE", context=where,
            )
        try:
            return Visit(
                local_id=session.ids.next_visit_id(),
                patient_ref=patient_ref,
                start_date=start,
                end_date=end,
                location=str(location) if location not in (None, "") else None,
                admission_class=admission_class if admission_class not in (None, "") else AdmissionClass.OUTPATIENT,
                source_system=self.source_system,
            )
        except PydanticValidationError as e:
            self._reject(session, "INVALID_VISIT", "Visit record rejected", e, where)
            return None

    def build_observation(
        self,
        session: ImportSession,
        concept_code: Any,
        raw_value: Any,
        patient_ref: Optional[int],
        visit_ref: Optional[int] = None,
        start_date: Any = None,
        declared_type: Any = None,
        unit: Optional[str] = None,
        category: Optional[str] = None,
        provider_id: Optional[str] = None,
        where: Optional[dict] = None,
    ) -> Optional[Observation]:
        """Build an observation with its value coerced into the right slot.

        The value type is the declared one, else the concept's, else inferred
        from the value. Values that don't coerce to their type fall back to
        text with a VALUE_COERCION_FAILED warning; numeric values that fail
        inline validation are skipped with an INVALID_VALUE warning.
        """
        where = where or {}
        code = str(concept_code).strip() if concept_code not in (None, "") else ""
        if not code:
            session.warning("MISSING_REQUIRED_FIELD", "Observation skipped: no concept code",
                            field="CONCEPT_CD", context=where)
            return None
        if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
            return None

        concept = self.lookup_concept(code, session)
        value_type = declared_type or (concept.value_type if concept else None) or infer_value_type(raw_value)
        try:
            slots = self.coerce_value(session, value_type, raw_value, code, where)
        except PydanticValidationError as e:
            self._reject(session, "INVALID_OBSERVATION", f"Observation {code} rejected", e, where)
            return None
        except Exception as e:
            logger.error(
                f"Unexpected error coercing value of observation {code}: {str(e)}",
                exc_info=True,
                extra={"format": self.format.value, "location": where},
            )
            session.warning(
                "INVALID_OBSERVATION", f"Observation {code} rejected",
                details=str(e), context=where,
            )
            return None
        if slots is None:
            return None
        value_type, fields = slots

        if value_type is ValueType.NUMERIC and self.validator is not None:
            if self.checked_number(session, fields["numeric_value"], code, where, concept_code=code) is None:
                return None

        if category is None:
            category = (concept.category if concept and concept.category else None) or determine_category(
                f"{concept.name if concept and concept.name else ''} {code}"
            ).value
        if value_type is ValueType.QUESTIONNAIRE:
            category = ObservationCategory.SURVEY_BEST.value

        try:
            return Observation(
                patient_ref=patient_ref,
                visit_ref=visit_ref,
                concept_code=code,
                value_type=value_type,
                unit=unit or (concept.unit if concept else None),
                start_date=start_date,
                category=category,
                provider_id=provider_id or "@",
                source_system=self.source_system,
                **fields,
            )
        except PydanticValidationError as e:
            self._reject(session, "INVALID_OBSERVATION", f"Observation {code} rejected", e, where)
            return None

    def coerce_value(
        self, session: ImportSession, value_type: ValueType, raw: Any, code: str, where: dict
    ) -> Optional[tuple[ValueType, dict[str, Any]]]:
        """Place a raw value into the slot its value type requires."""
        if value_type is ValueType.NUMERIC:
            number = parse_numeric(raw)
            if number is not None:
                return value_type, {"numeric_value": number}
            return self._fallback_to_text(session, raw, code, "numeric", where)

        if value_type is ValueType.DATE:
            iso = normalize_date(raw)
            if iso is not None:
                return value_type, {"text_value": iso}
            return self._fallback_to_text(session, raw, code, "date", where)

        if value_type is ValueType.QUESTIONNAIRE:
            if isinstance(raw, QuestionnairePayload):
                payload = raw
            else:
                decoded = parse_payload_json(raw)
                if decoded is None:
                    return self._fallback_to_raw(session, raw, code, "questionnaire", where)
                payload = build_questionnaire_payload(decoded, self.item_type_fallback)
            return value_type, {"blob": payload, "summary": payload.summary()}

        if value_type is ValueType.MEDICATION:
            if isinstance(raw, MedicationPayload):
                payload = raw
            else:
                decoded = parse_payload_json(raw)
                try:
                    payload = MedicationPayload.model_validate(
                        decoded if decoded is not None else {"name": str(raw)}
                    )
                except (PydanticValidationError, ValueError):
                    return self._fallback_to_raw(session, raw, code, "medication", where)
            return value_type, {"blob": payload, "summary": payload.summary()}

        if value_type is ValueType.RAW:
            blob = raw if isinstance(raw, str) else json.dumps(raw, default=str)
            return value_type, {"blob": blob}

        return value_type, {"text_value": self.as_text(raw)}

    @staticmethod
    def as_text(raw: Any) -> str:
        if isinstance(raw, bool):
            return boolean_to_text(raw)
        if isinstance(raw, (dict, list)):
            return json.dumps(raw, default=str)
        if isinstance(raw, float) and raw.is_integer():
            return str(int(raw))
        if isinstance(raw, date):
            return raw.isoformat()
        return str(raw)

    def checked_number(
        self,
        session: ImportSession,
        raw: Any,
        field: str,
        where: Optional[dict] = None,
        concept_code: Optional[str] = None,
    ) -> Optional[float]:
        """Parse and inline-validate a number. Returns None (with a warning) when it fails."""
        number = parse_numeric(raw)
        if number is None:
            session.warning(
                "VALUE_COERCION_FAILED", f"{field}: {_truncate_for_logging(raw)!r} is not a number",
                field=field, context=where or {},
            )
            return None
        if self.validator is None:
            return number
        result = self.validator.validate_data(number, "numeric", concept_code, metadata={"field": field})
        if result.is_valid:
            return number
        session.warning(
            "INVALID_VALUE",
            f"{field}: value {number:g} failed validation and was skipped",
            field=field,
            details="; ".join(f"{issue.code}: {issue.message}" for issue in result.errors),
            context={**(where or {}), "validationCodes": result.error_codes()},
        )
        return None

    def _fallback_to_text(self, session, raw, code, expected, where):
        session.warning(
            "VALUE_COERCION_FAILED",
            f"{code}: {_truncate_for_logging(raw)!r} is not a valid {expected} value; stored as text",
            field=code, context=where,
        )
        return ValueType.TEXT, {"text_value": self.as_text(raw)}

    def _fallback_to_raw(self, session, raw, code, expected, where):
        session.warning(
            "VALUE_COERCION_FAILED",
            f"{code}: value is not a valid {expected} payload; stored as raw data",
            field=code, context=where,
        )
        blob = raw if isinstance(raw, str) else json.dumps(raw, default=str)
        return ValueType.RAW, {"blob": blob}

    def _reject(self, session: ImportSession, code: str, message: str, error: PydanticValidationError, where: dict) -> None:
        details = _issue_message(error)
        logger.warning(
            f"RECORD REJECTION: {message}",
            extra={"format": self.format.value, "reason": details, "location": where},
        )
        session.warning(code, message, details=details, context=where)
