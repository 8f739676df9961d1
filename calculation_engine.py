"""Server-side calculation of schema-declared formulas."""

from __future__ import annotations

import copy
import logging
from decimal import Decimal
from typing import Any, Iterable

from valora import ci_tree
from valora.canonical_json import CanonicalJsonTypeError, canonical_dumps
from valora.results import CALCULATION_ERROR, SCHEMA_NOT_FOUND, VALIDATION, fail, ok
from valora.temp_values import extract_temp_values, field_from_temp, is_temp_field, overlay, temp_name

from formula_eval import FormulaEvalError, eval_condition, eval_formula, round_number
from module_schema import CalculationRules, DocumentTotals, ModuleSchema, parse_module_schema

logger = logging.getLogger("valora.calculation")


def _applies(dependent_fields: Iterable[str], changed_field: str | None) -> bool:
    deps = [d for d in dependent_fields if isinstance(d, str)]
    if not changed_field or not deps:
        return True
    changed = field_from_temp(changed_field).lower()
    for dep in deps:
        dep = dep.lower()
        if dep == changed or dep.rsplit(".", 1)[-1] == changed.rsplit(".", 1)[-1]:
            return True
    return False


def _rows(view: dict, grid_field: str) -> list:
    found = ci_tree.lookup(view, grid_field)
    if found is None or not isinstance(found[1], list):
        return []
    return [row for row in found[1] if isinstance(row, dict)]


def _set(target: dict, key: str, value: Any) -> None:
    stored = ci_tree.find_key(target, key)
    target[stored if stored is not None else key] = value


def _param_scope(parameters, source: dict) -> dict:
    return {param.name: ci_tree.walk(source, *param.source.split(".")) for param in parameters}


def run_calculations(rules: CalculationRules, view: dict, changed_field: str | None = None) -> list[str]:
    """Apply line-item, document and complex rules to ``view`` in place.

    Returns the document-level target fields that were computed.
    """
    computed: list[str] = []
    for rule in rules.line_items:
        if not _applies(rule.dependent_fields, changed_field):
            continue
        for row in _rows(view, rule.grid_field):
            scope = {**view, **row}
            if eval_condition(rule.condition, scope):
                _set(row, rule.target_field, eval_formula(rule.formula, scope))

    for rule in rules.documents:
        if not _applies(rule.dependent_fields, changed_field):
            continue
        if eval_condition(rule.condition, view):
            _set(view, rule.target_field, eval_formula(rule.formula, view))
            computed.append(rule.target_field)

    for rule in rules.complex:
        if not _applies(rule.dependent_fields, changed_field):
            continue
        if rule.is_line_item:
            for row in _rows(view, rule.grid_field):
                scope = {**view, **row}
                scope.update(_param_scope(rule.parameters, scope))
                if eval_condition(rule.condition, scope):
                    _set(row, rule.target_field, eval_formula(rule.expression, scope))
        else:
            scope = {**view, **_param_scope(rule.parameters, view)}
            if eval_condition(rule.condition, scope):
                _set(view, rule.target_field, eval_formula(rule.expression, scope))
                computed.append(rule.target_field)
    return computed


def compute_document_totals(totals: DocumentTotals | None, view: dict) -> dict:
    """Totals by name, rounded to each total's decimal places."""
    if totals is None:
        return {}
    out: dict = {}
    for total in totals.fields:
        scope = {**view, **out}
        if total.formula:
            value = eval_formula(total.formula, scope)
        elif "." in total.source:
            value = eval_formula(f"SUM({total.source})", scope)
        elif total.source:
            found = ci_tree.lookup(scope, total.source)
            value = found[1] if found else total.default_value
        else:
            value = total.default_value
        out[total.name] = round_number(value if value is not None else Decimal(0), total.decimal_places)
    return out


def _canonical(form_data: dict) -> dict:
    return {k: copy.deepcopy(v) for k, v in form_data.items() if not is_temp_field(k)}


def calculate(schema: ModuleSchema, form_data: dict, changed_field: str | None = None, temp_values: dict | None = None) -> dict:
    """Run a schema's calculations and return the response payload.

    Raises FormulaEvalError when a formula cannot be evaluated.
    """
    form_data = form_data if isinstance(form_data, dict) else {}
    temps = extract_temp_values(form_data)
    temps.update(extract_temp_values(temp_values))
    if not schema.calculation_rules.complex_calculation:
        return {"calculatedValues": _canonical(form_data), "documentTotals": {}, "tempValues": temps}

    view = copy.deepcopy(overlay(form_data, temps))
    computed = run_calculations(schema.calculation_rules, view, changed_field)

    calculated = _canonical(form_data)
    for rule in schema.calculation_rules.line_items:
        found = ci_tree.lookup(view, rule.grid_field)
        if found is not None:
            _set(calculated, found[0], found[1])
    for rule in schema.calculation_rules.complex:
        if rule.is_line_item:
            found = ci_tree.lookup(view, rule.grid_field)
            if found is not None:
                _set(calculated, found[0], found[1])
    for target in computed:
        found = ci_tree.lookup(view, target)
        value = found[1] if found else None
        _set(calculated, target, value)
        staged = temp_name(target)
        if staged in temps:
            temps[staged] = value

    totals = compute_document_totals(schema.document_totals, view)
    return {"calculatedValues": calculated, "documentTotals": totals, "tempValues": temps}


class CalculationEngine:
    def __init__(self, resolver) -> None:
        self.resolver = resolver

    def execute(
        self,
        tenant_id: str,
        env: str,
        module: str,
        form_data: dict | None,
        changed_field: str | None = None,
        temp_values: dict | None = None,
    ) -> dict:
        if not module or not str(module).strip():
            return fail(VALIDATION, "Module is required", field="module")
        if form_data is not None and not isinstance(form_data, dict):
            return fail(VALIDATION, "FormData must be an object", field="formData")
        try:
            canonical_dumps({"formData": form_data, "tempValues": temp_values})
        except (CanonicalJsonTypeError, ValueError) as exc:
            return fail(VALIDATION, "FormData must be plain JSON without NaN or Infinity", detail={"reason": str(exc)})
        resolved = self.resolver.get_runtime(tenant_id, env, module)
        if not resolved["ok"]:
            logger.info("calculation_schema_missing tenant=%s env=%s module=%s", tenant_id, env, module)
            return fail(SCHEMA_NOT_FOUND, "Schema not found")
        schema = parse_module_schema(resolved["data"], module)
        try:
            payload = calculate(schema, form_data or {}, changed_field, temp_values)
        except FormulaEvalError as exc:
            logger.warning(
                "calculation_failed tenant=%s module=%s code=%s formula=%s",
                tenant_id,
                module,
                exc.code,
                exc.formula,
            )
            return fail(
                CALCULATION_ERROR,
                "Calculation execution failed",
                detail={"code": exc.code, "message": exc.message, "formula": exc.formula},
            )
        logger.info(
            "calculation_executed tenant=%s module=%s version=%s changed=%s",
            tenant_id,
            module,
            resolved.get("version"),
            changed_field,
        )
        return ok(payload)
