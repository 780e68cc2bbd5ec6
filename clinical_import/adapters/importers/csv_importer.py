"""CSV Import Adapter.

This adapter turns delimited clinical exports into patients, visits and
observations. Three sub-shapes are recognized from the header rows:

    - observation rows: one row per observation, with CONCEPT_CD and VALUE
      columns (plus optional PATIENT_CD, START_DATE, VALTYPE_CD, UNIT_CD)
    - wide export: one row per patient visit, one column per concept, with
      one header row of concept codes or two header rows (human readable
      names, then concept codes)
    - condensed wide export: four header rows (FIELD_NAME, VALTYPE_CD,
      UNIT_CD, NAME_CHAR), optionally labelled in the first column

Lines starting with ``#`` are comments; ``Export Date:``, ``Source:`` and
``Version:`` comments are copied into the result metadata.

Security Impact:
    - Rows with the wrong number of cells are skipped with a warning
    - Unmapped columns are reported, never guessed into clinical fields
    - Every row is processed in isolation so one bad row cannot abort the file
"""

import csv
import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import pandas as pd

from clinical_import.adapters.importers.base_importer import BaseImporter, ImportSession
from clinical_import.domain.entities import ClinicalData, Patient, Visit
from clinical_import.domain.enums import ImportFormat, ValueType
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure
from clinical_import.domain.normalization import parse_date, parse_value_type
from clinical_import.domain.ports import StructureError
from clinical_import.services.format_detector import detect_csv_delimiter

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = {
    "PATIENT_CD": "id",
    "PATIENT_NUM": "id",
    "PATIENT_ID": "id",
    "SEX_CD": "sex",
    "GENDER": "sex",
    "AGE_IN_YEARS": "age",
    "AGE": "age",
    "BIRTH_DATE": "birth_date",
    "DOB": "birth_date",
}
VISIT_COLUMNS = {
    "START_DATE": "start_date",
    "VISIT_DATE": "start_date",
    "END_DATE": "end_date",
    "LOCATION_CD": "location",
    "INOUT_CD": "admission_class",
    "ENCOUNTER_NUM": "encounter",
}
OBSERVATION_ROW_COLUMNS = {
    "CONCEPT_CD": "concept_code",
    "VALUE": "value",
    "TVAL_CHAR": "value",
    "NVAL_NUM": "value",
    "VALTYPE_CD": "value_type",
    "UNIT_CD": "unit",
    "CATEGORY_CHAR": "category",
    "PROVIDER_ID": "provider_id",
}

_VALUE_TYPE_WORDS = {
    "numeric": ValueType.NUMERIC,
    "number": ValueType.NUMERIC,
    "text": ValueType.TEXT,
    "string": ValueType.TEXT,
    "date": ValueType.DATE,
    "blob": ValueType.RAW,
}


class CsvShape(str, Enum):
    OBSERVATION_ROWS = "observation_rows"
    WIDE = "wide"
    CONDENSED = "condensed"


@dataclass(frozen=True)
class CsvColumn:
    """One column of a wide export, described by its header rows."""

    index: int
    code: str
    label: Optional[str] = None
    value_type: Optional[ValueType] = None
    unit: Optional[str] = None


def _declared_type(cell: str) -> Optional[ValueType]:
    text = (cell or "").strip()
    return _VALUE_TYPE_WORDS.get(text.lower()) or parse_value_type(text)


def _first(rows: list[dict], key: str) -> Any:
    for row in rows:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def _assign(fields: dict[int, str], index: int, name: str, header: str, session: ImportSession) -> None:
    if name in fields.values():
        session.warning(
            "UNMAPPED_COLUMN",
            f"Column '{header}' repeats an already mapped {name} column and was ignored",
            field=header,
            context={"column": index + 1},
        )
        return
    fields[index] = name


class CsvImporter(BaseImporter):
    """CSV import adapter with header-driven column mapping.

    Parameters:
        delimiter: Field delimiter; detected from the first header line when None
        **kwargs: Collaborators accepted by BaseImporter
    """

    format = ImportFormat.CSV
    source_system = "CSV_IMPORT"

    def __init__(self, delimiter: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.delimiter = delimiter

    def import_from_csv(
        self,
        content: str,
        options: Optional[ImportOptions] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        return self.import_content(content, options, context)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse(self, content: str, session: ImportSession) -> ClinicalData:
        lines = content.lstrip("\ufeff").splitlines()
        session.metadata.update(self._comment_metadata(lines))

        body = [line for line in lines if line.strip() and not line.lstrip().startswith("#")]
        if not body:
            raise StructureError("MISSING_HEADERS", "CSV content has no header row")

        delimiter = self.delimiter or detect_csv_delimiter(body[0])
        rows = [[cell.strip() for cell in row] for row in csv.reader(io.StringIO("\n".join(body)), delimiter=delimiter)]
        shape, header_count, columns = self._read_headers(rows)
        session.metadata.update({"csvShape": shape.value, "delimiter": delimiter, "headerRows": header_count})

        data_rows = rows[header_count:]
        if not data_rows:
            raise StructureError("NO_DATA_ROWS", "CSV contains header rows but no data rows")

        width = len(rows[0])
        records = []
        for offset, row in enumerate(data_rows):
            row_number = header_count + offset + 1
            if len(row) != width:
                session.warning(
                    "ROW_LENGTH_MISMATCH",
                    f"Row {row_number} has {len(row)} cells, expected {width}; row skipped",
                    context={"row": row_number},
                )
                continue
            records.append(row + [row_number])
        if not records:
            raise StructureError("NO_DATA_ROWS", "CSV contains no usable data rows")

        frame = pd.DataFrame(records, columns=[*range(width), "_row"])
        if shape is CsvShape.OBSERVATION_ROWS:
            return self._import_observation_rows(frame, rows[0], session)
        return self._import_wide(frame, columns, session)

    def _comment_metadata(self, lines: list[str]) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        for line in lines:
            stripped = line.strip()
            if not stripped.startswith("#"):
                continue
            text = stripped.lstrip("#").strip()
            lowered = text.lower()
            if lowered.startswith("export date:"):
                metadata["exportDate"] = text.split(":", 1)[1].strip()
            elif lowered.startswith("source:"):
                metadata["source"] = text.split(":", 1)[1].strip()
            elif lowered.startswith("version:"):
                metadata["version"] = text.split(":", 1)[1].strip()
            elif text and "description" not in metadata:
                metadata["description"] = text
        return metadata

    def _read_headers(self, rows: list[list[str]]) -> tuple[CsvShape, int, list[CsvColumn]]:
        """Detect the sub-shape and describe the columns.

        Raises:
            StructureError: MISSING_HEADERS or HEADER_MISMATCH
        """
        first = [cell.upper() for cell in rows[0]]
        second = [cell.upper() for cell in rows[1]] if len(rows) > 1 else []
        known = set(PATIENT_COLUMNS) | set(VISIT_COLUMNS)

        if "CONCEPT_CD" in first and {"VALUE", "TVAL_CHAR", "NVAL_NUM"} & set(first):
            return CsvShape.OBSERVATION_ROWS, 1, []

        labelled = first[:1] == ["FIELD_NAME"] or second[:1] == ["VALTYPE_CD"]
        typed_second_row = len(second) > 0 and all(
            _declared_type(cell) is not None for cell in rows[1] if cell
        ) and any(rows[1])
        if labelled or (typed_second_row and not (set(second) & known)):
            if len(rows) < 4:
                raise StructureError("MISSING_HEADERS", "Condensed CSV requires four header rows")
            headers = rows[:4]
            if any(len(row) != len(headers[0]) for row in headers):
                raise StructureError("HEADER_MISMATCH", "Condensed CSV header rows differ in length")
            start = 1 if labelled else 0
            columns = [
                CsvColumn(
                    index=index,
                    code=headers[0][index],
                    value_type=_declared_type(headers[1][index]),
                    unit=headers[2][index] or None,
                    label=headers[3][index] or None,
                )
                for index in range(start, len(headers[0]))
            ]
            return CsvShape.CONDENSED, 4, columns

        if set(first) & known and not set(second) & known:
            return CsvShape.WIDE, 1, [CsvColumn(index=i, code=code) for i, code in enumerate(rows[0])]

        if len(rows) < 2:
            raise StructureError("MISSING_HEADERS", "CSV requires a header row of concept codes")
        if len(rows[0]) != len(rows[1]):
            raise StructureError(
                "HEADER_MISMATCH",
                f"Header rows differ in length ({len(rows[0])} names, {len(rows[1])} codes)",
            )
        return CsvShape.WIDE, 2, [
            CsvColumn(index=i, code=code, label=rows[0][i] or None) for i, code in enumerate(rows[1])
        ]

    # ------------------------------------------------------------------
    # Wide exports
    # ------------------------------------------------------------------

    def _import_wide(self, frame: pd.DataFrame, columns: list[CsvColumn], session: ImportSession) -> ClinicalData:
        patient_fields: dict[int, str] = {}
        visit_fields: dict[int, str] = {}
        observation_columns: list[CsvColumn] = []

        for column in columns:
            code = column.code.strip()
            upper = code.upper()
            if not code:
                session.warning(
                    "UNMAPPED_COLUMN",
                    f"Column {column.index + 1} ({column.label or 'unnamed'}) has no concept code and was ignored",
                    context={"column": column.index + 1},
                )
            elif upper in PATIENT_COLUMNS:
                _assign(patient_fields, column.index, PATIENT_COLUMNS[upper], code, session)
            elif upper in VISIT_COLUMNS:
                _assign(visit_fields, column.index, VISIT_COLUMNS[upper], code, session)
            else:
                observation_columns.append(column)

        self._warn_missing_fields(patient_fields, visit_fields, session)

        def row_view(row: pd.Series) -> dict[str, Any]:
            view = {name: row[index] for index, name in patient_fields.items()}
            view.update({name: row[index] for index, name in visit_fields.items()})
            view["_row"] = int(row["_row"])
            return view

        patients, visits, observations = [], [], []
        for key, group in self._group_by_patient(frame, patient_fields):
            views = [row_view(row) for _, row in group.iterrows()]
            patient = self.build_patient(
                session,
                external_identifier=_first(views, "id") or key,
                sex=_first(views, "sex"),
                birth_date=_first(views, "birth_date"),
                age_in_years=_first(views, "age"),
                location={"row": views[0]["_row"]},
            )
            if patient is None:
                continue
            patients.append(patient)
            visit_index: dict[str, Visit] = {}

            for (_, row), view in zip(group.iterrows(), views):
                visit = self._visit_for(session, patient, view, [view], visit_index, visits)
                for column in observation_columns:
                    observation = self.build_observation(
                        session,
                        concept_code=column.code,
                        raw_value=row[column.index],
                        patient_ref=patient.local_id,
                        visit_ref=visit.local_id if visit else None,
                        start_date=visit.start_date if visit else None,
                        declared_type=column.value_type,
                        unit=column.unit,
                        where={"row": view["_row"], "column": column.code},
                    )
                    if observation is not None:
                        observations.append(observation)

        return ClinicalData(patients=patients, visits=visits, observations=observations)

    # ------------------------------------------------------------------
    # Observation rows
    # ------------------------------------------------------------------

    def _import_observation_rows(self, frame: pd.DataFrame, header: list[str], session: ImportSession) -> ClinicalData:
        patient_fields: dict[int, str] = {}
        visit_fields: dict[int, str] = {}
        fact_fields: dict[int, str] = {}

        for index, name in enumerate(header):
            upper = name.strip().upper()
            if upper in PATIENT_COLUMNS:
                _assign(patient_fields, index, PATIENT_COLUMNS[upper], name, session)
            elif upper in VISIT_COLUMNS:
                _assign(visit_fields, index, VISIT_COLUMNS[upper], name, session)
            elif upper in OBSERVATION_ROW_COLUMNS and OBSERVATION_ROW_COLUMNS[upper] not in fact_fields.values():
                fact_fields[index] = OBSERVATION_ROW_COLUMNS[upper]
            else:
                session.warning(
                    "UNMAPPED_COLUMN",
                    f"Column '{name or index + 1}' is not a recognized observation column and was ignored",
                    field=name or None,
                    context={"column": index + 1},
                )

        self._warn_missing_fields(patient_fields, visit_fields, session)

        patients, visits, observations = [], [], []
        for key, group in self._group_by_patient(frame, patient_fields):
            views = []
            for _, row in group.iterrows():
                view = {name: row[index] for index, name in {**patient_fields, **visit_fields, **fact_fields}.items()}
                view["_row"] = int(row["_row"])
                views.append(view)

            patient = self.build_patient(
                session,
                external_identifier=_first(views, "id") or key,
                sex=_first(views, "sex"),
                birth_date=_first(views, "birth_date"),
                age_in_years=_first(views, "age"),
                location={"row": views[0]["_row"]},
            )
            if patient is None:
                continue
            patients.append(patient)
            visit_index: dict[str, Visit] = {}

            for view in views:
                visit = self._visit_for(session, patient, view, views, visit_index, visits)
                declared = view.get("value_type")
                observation = self.build_observation(
                    session,
                    concept_code=view.get("concept_code"),
                    raw_value=view.get("value"),
                    patient_ref=patient.local_id,
                    visit_ref=visit.local_id if visit else None,
                    start_date=visit.start_date if visit else None,
                    declared_type=_declared_type(declared) if declared else None,
                    unit=view.get("unit") or None,
                    category=view.get("category") or None,
                    provider_id=view.get("provider_id") or None,
                    where={"row": view["_row"]},
                )
                if observation is not None:
                    observations.append(observation)

        return ClinicalData(patients=patients, visits=visits, observations=observations)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _warn_missing_fields(self, patient_fields: dict[int, str], visit_fields: dict[int, str], session: ImportSession) -> None:
        if "id" not in patient_fields.values():
            session.warning(
                "MISSING_RECOMMENDED_FIELD",
                "No PATIENT_CD column; every row is treated as a separate patient",
                field="PATIENT_CD",
            )
        if "start_date" not in visit_fields.values():
            session.warning(
                "MISSING_RECOMMENDED_FIELD",
                "No START_DATE column; observations are recorded at patient level",
                field="START_DATE",
            )

    def _group_by_patient(self, frame: pd.DataFrame, patient_fields: dict[int, str]):
        """Yield (patient key, rows) in file order."""
        id_columns = [index for index, name in patient_fields.items() if name == "id"]
        keys = frame[id_columns[0]] if id_columns else pd.Series("", index=frame.index)
        keys = keys.where(keys != "", "PATIENT_" + frame["_row"].astype(str))
        return frame.groupby(keys, sort=False)

    def _visit_for(
        self,
        session: ImportSession,
        patient: Patient,
        view: dict[str, Any],
        views: list[dict[str, Any]],
        visit_index: dict[str, Visit],
        visits: list[Visit],
    ) -> Optional[Visit]:
        raw_start = view.get("start_date")
        if not raw_start:
            return None
        start = parse_date(raw_start)
        key = start.isoformat() if start else str(raw_start)
        if key in visit_index:
            return visit_index[key]
        same_visit = [other for other in views if other.get("start_date") == raw_start] or [view]
        visit = self.build_visit(
            session,
            patient_ref=patient.local_id,
            start_date=raw_start,
            end_date=_first(same_visit, "end_date"),
            location=_first(same_visit, "location"),
            admission_class=_first(same_visit, "admission_class"),
            where={"row": view["_row"]},
        )
        visit_index[key] = visit
        if visit is not None:
            visits.append(visit)
        return visit
