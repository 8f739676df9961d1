"""Typed view over a screen schema document.

Schema documents are free-form JSON. ``parse_module_schema`` reads the
sections the engine relies on (fields, calculation rules, document totals)
into dataclasses and keeps everything it does not understand in
``extensions`` so documents round-trip untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from valora import ci_tree
from valora.attribute_value import BOOLEAN, DATE, NUMBER, TEXT

FIELD_RULE_KEYS = {
    "type",
    "required",
    "ui",
    "unique",
    "maxlength",
    "pattern",
    "autogenerate",
    "issensitive",
    "default",
    "defaultvalue",
    "options",
    "readonly",
}

KIND_TEXT = "text"
KIND_NUMBER = "number"
KIND_DATE = "date"
KIND_BOOLEAN = "boolean"
KIND_SELECT = "select"
KIND_LOOKUP = "lookup"
KIND_GRID = "grid"

_KIND_BY_TYPE = {
    "number": KIND_NUMBER,
    "decimal": KIND_NUMBER,
    "integer": KIND_NUMBER,
    "int": KIND_NUMBER,
    "currency": KIND_NUMBER,
    "percent": KIND_NUMBER,
    "date": KIND_DATE,
    "datetime": KIND_DATE,
    "boolean": KIND_BOOLEAN,
    "bool": KIND_BOOLEAN,
    "checkbox": KIND_BOOLEAN,
    "switch": KIND_BOOLEAN,
    "select": KIND_SELECT,
    "dropdown": KIND_SELECT,
    "radio": KIND_SELECT,
    "multiselect": KIND_SELECT,
    "lookup": KIND_LOOKUP,
    "grid": KIND_GRID,
    "table": KIND_GRID,
    "lineitems": KIND_GRID,
}

_DATA_TYPE_BY_KIND = {
    KIND_NUMBER: NUMBER,
    KIND_DATE: DATE,
    KIND_BOOLEAN: BOOLEAN,
}


def _get(source: Any, key: str, default: Any = None) -> Any:
    found = ci_tree.lookup(source, key)
    return found[1] if found else default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _rest(raw: dict, known: set[str]) -> dict:
    return {k: v for k, v in raw.items() if k.lower() not in known}


def kind_for_type(type_name: Any) -> str:
    if not isinstance(type_name, str):
        return KIND_TEXT
    return _KIND_BY_TYPE.get(type_name.strip().lower(), KIND_TEXT)


def data_type_for(type_name: Any) -> str:
    return _DATA_TYPE_BY_KIND.get(kind_for_type(type_name), TEXT)


@dataclass
class UiHint:
    type: str | None = None
    label: str | None = None
    mask: str | None = None
    options: list = field(default_factory=list)
    section: str | None = None
    lookup: str | None = None
    lookup_field: str | None = None
    display_field: str | None = None
    mapping: dict = field(default_factory=dict)
    decimal_places: int | None = None
    extensions: dict = field(default_factory=dict)

    _KNOWN = {"type", "label", "mask", "options", "section", "lookup", "lookupfield", "displayfield", "mapping", "decimalplaces"}

    @classmethod
    def parse(cls, raw: Any) -> "UiHint | None":
        if not isinstance(raw, dict):
            return None
        places = _get(raw, "decimalPlaces")
        return cls(
            type=_get(raw, "type"),
            label=_get(raw, "label"),
            mask=_get(raw, "mask"),
            options=_as_list(_get(raw, "options")),
            section=_get(raw, "section"),
            lookup=_get(raw, "lookup"),
            lookup_field=_get(raw, "lookupField"),
            display_field=_get(raw, "displayField"),
            mapping=_get(raw, "mapping") if isinstance(_get(raw, "mapping"), dict) else {},
            decimal_places=_as_int(places, 0) if places is not None else None,
            extensions=_rest(raw, cls._KNOWN),
        )


@dataclass
class FieldRule:
    name: str
    kind: str = KIND_TEXT
    type: str | None = None
    label: str | None = None
    required: bool = False
    unique: bool = False
    read_only: bool = False
    is_system: bool = False
    multiline: bool = False
    max_length: int | None = None
    pattern: str | None = None
    options: list = field(default_factory=list)
    default_value: Any = None
    is_sensitive: bool = False
    auto_generate: bool = False
    storage: str = "Core"
    columns: list = field(default_factory=list)
    ui: UiHint | None = None
    extensions: dict = field(default_factory=dict)

    _KNOWN = {
        "type",
        "label",
        "required",
        "unique",
        "readonly",
        "issystem",
        "multiline",
        "maxlength",
        "pattern",
        "options",
        "default",
        "defaultvalue",
        "issensitive",
        "autogenerate",
        "storage",
        "columns",
        "ui",
    }

    @property
    def data_type(self) -> str:
        """Storage type, taken from the ui hint first and then the rule type."""
        ui_type = self.ui.type if self.ui else None
        return data_type_for(ui_type or self.type or KIND_TEXT)

    def option_values(self) -> list:
        values = []
        for opt in self.options or (self.ui.options if self.ui else []):
            if isinstance(opt, dict):
                found = ci_tree.lookup(opt, "value")
                values.append(found[1] if found else None)
            else:
                values.append(opt)
        return values

    @classmethod
    def parse(cls, name: str, raw: dict) -> "FieldRule":
        ui = UiHint.parse(_get(raw, "ui"))
        type_name = _get(raw, "type")
        kind = kind_for_type(type_name or (ui.type if ui else None))
        if ui is not None and ui.lookup and kind == KIND_TEXT:
            kind = KIND_LOOKUP
        columns = _as_list(_get(raw, "columns"))
        if columns and kind == KIND_TEXT:
            kind = KIND_GRID
        max_length = _get(raw, "maxLength")
        default_value = _get(raw, "defaultValue", _get(raw, "default"))
        return cls(
            name=name,
            kind=kind,
            type=type_name,
            label=_get(raw, "label") or (ui.label if ui else None),
            required=_as_bool(_get(raw, "required", False)),
            unique=_as_bool(_get(raw, "unique", False)),
            read_only=_as_bool(_get(raw, "readOnly", False)),
            is_system=_as_bool(_get(raw, "isSystem", False)),
            multiline=_as_bool(_get(raw, "multiline", False)),
            max_length=_as_int(max_length, 0) if max_length is not None else None,
            pattern=_get(raw, "pattern"),
            options=_as_list(_get(raw, "options")),
            default_value=default_value,
            is_sensitive=_as_bool(_get(raw, "isSensitive", False)),
            auto_generate=_as_bool(_get(raw, "autoGenerate", False)),
            storage=_get(raw, "storage") or "Core",
            columns=columns,
            ui=ui,
            extensions=_rest(raw, cls._KNOWN),
        )


def is_field_rule(raw: Any) -> bool:
    return isinstance(raw, dict) and any(isinstance(k, str) and k.lower() in FIELD_RULE_KEYS for k in raw)


def flatten_fields(raw: Any) -> Dict[str, dict]:
    """Field rules by name, with nested sections flattened into their leaves."""
    out: Dict[str, dict] = {}
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            name = _get(item, "name") or _get(item, "fieldName") or _get(item, "id")
            if isinstance(name, str) and name:
                out[name] = item
        return out
    if not isinstance(raw, dict):
        return out
    for name, value in raw.items():
        if is_field_rule(value):
            out[name] = value
        elif isinstance(value, dict):
            out.update(flatten_fields(value))
    return out


@dataclass
class LineItemCalculation:
    target_field: str
    formula: str
    grid_field: str = "Items"
    trigger: str = "onChange"
    dependent_fields: List[str] = field(default_factory=list)
    condition: str | None = None


@dataclass
class DocumentCalculation:
    target_field: str
    formula: str
    trigger: str = "onLineChange"
    dependent_fields: List[str] = field(default_factory=list)
    condition: str | None = None


@dataclass
class CalculationParameter:
    name: str
    source: str
    data_type: str | None = None
    is_required: bool = True


@dataclass
class ComplexCalculation:
    target_field: str
    expression: str
    id: str | None = None
    name: str | None = None
    scope: str = "lineItem"
    grid_field: str = "Items"
    trigger: str = "onChange"
    dependent_fields: List[str] = field(default_factory=list)
    condition: str | None = None
    parameters: List[CalculationParameter] = field(default_factory=list)

    @property
    def is_line_item(self) -> bool:
        return (self.scope or "").strip().lower() != "document"


@dataclass
class CalculationRules:
    complex_calculation: bool = False
    line_items: List[LineItemCalculation] = field(default_factory=list)
    documents: List[DocumentCalculation] = field(default_factory=list)
    complex: List[ComplexCalculation] = field(default_factory=list)
    client_side: dict = field(default_factory=dict)


@dataclass
class TotalField:
    name: str
    source: str = ""
    formula: str | None = None
    label: str = ""
    display_position: str = "footer"
    decimal_places: int = 2
    editable: bool = False
    is_read_only: bool = True
    highlight: bool = False
    default_value: Any = None


@dataclass
class DocumentTotals:
    fields: List[TotalField] = field(default_factory=list)
    display_config: dict = field(default_factory=dict)


@dataclass
class ModuleSchema:
    module: str
    tenant_id: str | None = None
    version: int = 0
    object_type: str = "Master"
    fields: Dict[str, FieldRule] = field(default_factory=dict)
    calculation_rules: CalculationRules = field(default_factory=CalculationRules)
    document_totals: DocumentTotals | None = None
    attachment_config: dict | None = None
    cloud_storage: dict | None = None
    unique_constraints: list = field(default_factory=list)
    ui: dict | None = None
    should_post: bool = False
    raw: dict = field(default_factory=dict)

    def get_field(self, name: str) -> FieldRule | None:
        found = ci_tree.lookup(self.fields, name)
        return found[1] if found else None

    def required_fields(self) -> List[str]:
        return [name for name, rule in self.fields.items() if rule.required]


def _dicts(value: Any) -> List[dict]:
    return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []


def _strings(value: Any) -> List[str]:
    return [item for item in _as_list(value) if isinstance(item, str)]


def _parse_line_item(raw: dict) -> LineItemCalculation | None:
    target = _get(raw, "targetField")
    formula = _get(raw, "formula")
    if not target or not formula:
        return None
    return LineItemCalculation(
        target_field=target,
        formula=formula,
        grid_field=_get(raw, "gridField") or "Items",
        trigger=_get(raw, "trigger") or "onChange",
        dependent_fields=_strings(_get(raw, "dependentFields")),
        condition=_get(raw, "condition"),
    )


def _parse_document(raw: dict) -> DocumentCalculation | None:
    target = _get(raw, "targetField")
    formula = _get(raw, "formula")
    if not target or not formula:
        return None
    return DocumentCalculation(
        target_field=target,
        formula=formula,
        trigger=_get(raw, "trigger") or "onLineChange",
        dependent_fields=_strings(_get(raw, "dependentFields")),
        condition=_get(raw, "condition"),
    )


def _parse_complex(raw: dict) -> ComplexCalculation | None:
    target = _get(raw, "targetField")
    expression = _get(raw, "expression")
    if not target or not expression:
        return None
    parameters = []
    for param in _dicts(_get(raw, "parameters")):
        name = _get(param, "name")
        if not name:
            continue
        parameters.append(
            CalculationParameter(
                name=name,
                source=_get(param, "source") or name,
                data_type=_get(param, "dataType"),
                is_required=_as_bool(_get(param, "isRequired", True)),
            )
        )
    return ComplexCalculation(
        target_field=target,
        expression=expression,
        id=_get(raw, "id"),
        name=_get(raw, "name"),
        scope=_get(raw, "scope") or "lineItem",
        grid_field=_get(raw, "gridField") or "Items",
        trigger=_get(raw, "trigger") or "onChange",
        dependent_fields=_strings(_get(raw, "dependentFields")),
        condition=_get(raw, "condition"),
        parameters=parameters,
    )


def parse_calculation_rules(raw: Any) -> CalculationRules:
    if not isinstance(raw, dict):
        return CalculationRules()
    server = _get(raw, "serverSide") or {}
    line_items = [c for c in map(_parse_line_item, _dicts(_get(server, "lineItemCalculations"))) if c]
    documents = [c for c in map(_parse_document, _dicts(_get(server, "documentCalculations"))) if c]
    complex_calcs = [c for c in map(_parse_complex, _dicts(_get(server, "complexCalculations"))) if c]
    client_side = _get(raw, "clientSide")
    return CalculationRules(
        complex_calculation=_as_bool(_get(raw, "complexCalculation", False)),
        line_items=line_items,
        documents=documents,
        complex=complex_calcs,
        client_side=client_side if isinstance(client_side, dict) else {},
    )


def parse_document_totals(raw: Any) -> DocumentTotals | None:
    if not isinstance(raw, dict):
        return None
    fields_raw = _get(raw, "fields") or {}
    totals: List[TotalField] = []
    if isinstance(fields_raw, dict):
        for name, entry in fields_raw.items():
            if not isinstance(entry, dict):
                continue
            totals.append(
                TotalField(
                    name=name,
                    source=_get(entry, "source") or "",
                    formula=_get(entry, "formula"),
                    label=_get(entry, "label") or name,
                    display_position=_get(entry, "displayPosition") or "footer",
                    decimal_places=_as_int(_get(entry, "decimalPlaces", 2), 2),
                    editable=_as_bool(_get(entry, "editable", False)),
                    is_read_only=_as_bool(_get(entry, "isReadOnly", True)),
                    highlight=_as_bool(_get(entry, "highlight", False)),
                    default_value=_get(entry, "defaultValue"),
                )
            )
    display = _get(raw, "displayConfig")
    return DocumentTotals(fields=totals, display_config=display if isinstance(display, dict) else {})


def parse_module_schema(document: dict, module: str | None = None) -> ModuleSchema:
    if not isinstance(document, dict):
        raise ValueError("schema document must be an object")
    fields = {name: FieldRule.parse(name, raw) for name, raw in flatten_fields(_get(document, "fields")).items()}
    constraints = _get(document, "uniqueConstraints")
    attachment = _get(document, "attachmentConfig")
    cloud = _get(document, "cloudStorage")
    ui = _get(document, "ui")
    return ModuleSchema(
        module=_get(document, "module") or module or "",
        tenant_id=_get(document, "tenantId"),
        version=_as_int(_get(document, "version", 0), 0),
        object_type=_get(document, "objectType") or "Master",
        fields=fields,
        calculation_rules=parse_calculation_rules(_get(document, "calculationRules")),
        document_totals=parse_document_totals(_get(document, "documentTotals")),
        attachment_config=attachment if isinstance(attachment, dict) else None,
        cloud_storage=cloud if isinstance(cloud, dict) else None,
        unique_constraints=constraints if isinstance(constraints, list) else [],
        ui=ui if isinstance(ui, dict) else None,
        should_post=_as_bool(_get(document, "shouldPost", False)),
        raw=document,
    )
