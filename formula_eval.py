"""Formula evaluator for schema calculation rules.

Formulas are infix expressions such as ``{Quantity} * {UnitPrice}``,
``SUM(Items.LineTotal)`` or ``IF(Qty >= 10, 10, 0)``. They are parsed with
``ast`` and only a small whitelist of node types is evaluated. Arithmetic
uses Decimal; values that do not parse as numbers count as 0.
"""

from __future__ import annotations

import ast
import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, DecimalException, InvalidOperation
from typing import Any, Callable, Dict

from valora import ci_tree


@dataclass
class FormulaEvalError(Exception):
    code: str
    message: str
    formula: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (formula={self.formula})" if self.formula else base


class FormulaSyntaxError(FormulaEvalError):
    def __init__(self, message: str, formula: str | None = None) -> None:
        super().__init__("FORMULA_SYNTAX", message, formula)


class FormulaDepthError(FormulaEvalError):
    def __init__(self, message: str, formula: str | None = None) -> None:
        super().__init__("FORMULA_DEPTH_EXCEEDED", message, formula)


class FormulaUnsupportedError(FormulaEvalError):
    def __init__(self, message: str, formula: str | None = None) -> None:
        super().__init__("FORMULA_UNSUPPORTED", message, formula)


class FormulaArithmeticError(FormulaEvalError):
    def __init__(self, message: str, formula: str | None = None) -> None:
        super().__init__("FORMULA_ARITHMETIC", message, formula)


_BRACED = re.compile(r"\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}")
_SINGLE_EQ = re.compile(r"(?<![<>=!])=(?!=)")
_BANG = re.compile(r"!(?!=)")
_KEYWORDS = {"true": True, "false": False, "null": None}
_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")


def _parse_number(value: Any) -> Decimal:
    if isinstance(value, bool):
        return Decimal(1) if value else Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return Decimal(0)
    return Decimal(0)


def to_number(value: Any) -> Decimal:
    """Numeric view of a form value; unparseable and non-finite values are 0."""
    number = _parse_number(value)
    return number if number.is_finite() else Decimal(0)


def round_number(value: Any, places: int) -> Decimal:
    try:
        quantum = Decimal(1).scaleb(-int(places))
        return to_number(value).quantize(quantum, rounding=ROUND_HALF_UP)
    except DecimalException as exc:
        raise FormulaArithmeticError(f"Cannot round to {places} places: {exc.__class__.__name__}") from exc


def _normalize_code(text: str) -> str:
    text = _BRACED.sub(r"\1", text)
    text = text.replace("&&", " and ").replace("||", " or ").replace("<>", "!=")
    text = _SINGLE_EQ.sub("==", text)
    text = _BANG.sub(" not ", text)
    # AND / OR / NOT spelled in caps
    text = re.sub(r"\bAND\b", "and", text)
    text = re.sub(r"\bOR\b", "or", text)
    return re.sub(r"\bNOT\b", "not", text)


def normalize_formula(formula: str) -> str:
    """Rewrite spreadsheet-style operators into Python syntax.

    Quoted string literals are passed through untouched.
    """
    parts = _STRING_LITERAL.split(formula.strip())
    # split() puts the captured literals at odd indexes
    text = "".join(part if idx % 2 else _normalize_code(part) for idx, part in enumerate(parts))
    return text.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


class _Evaluator:
    def __init__(self, formula: str, scope: dict, depth_limit: int) -> None:
        self.formula = formula
        self.scope = scope
        self.depth_limit = depth_limit
        self.functions: Dict[str, Callable[[list, int], Any]] = {
            "SUM": self._fn_sum,
            "COUNT": self._fn_count,
            "AVG": self._fn_avg,
            "MIN": self._fn_min,
            "MAX": self._fn_max,
            "ROUND": self._fn_round,
            "ABS": self._fn_abs,
            "IF": self._fn_if,
            "IIF": self._fn_if,
            "COALESCE": self._fn_coalesce,
        }

    def run(self, node: ast.AST) -> Any:
        return self._eval(node, 1)

    def _check_depth(self, depth: int) -> None:
        if depth > self.depth_limit:
            raise FormulaDepthError("Depth limit exceeded", self.formula)

    def _resolve(self, path: list[str]) -> Any:
        value = self.scope
        for part in path:
            if isinstance(value, dict):
                found = ci_tree.lookup(value, part)
                value = found[1] if found else None
            else:
                return None
        return value

    def _path_of(self, node: ast.AST) -> list[str] | None:
        if isinstance(node, ast.Name):
            return [node.id]
        if isinstance(node, ast.Attribute):
            base = self._path_of(node.value)
            return base + [node.attr] if base is not None else None
        return None

    def _column(self, node: ast.AST) -> list | None:
        """Values of ``Grid.Field`` across the rows of a grid, or None."""
        path = self._path_of(node)
        if not path or len(path) < 2:
            return None
        rows = self._resolve(path[:-1])
        if not isinstance(rows, list):
            return None
        values = []
        for row in rows:
            if isinstance(row, dict):
                found = ci_tree.lookup(row, path[-1])
                values.append(found[1] if found else None)
        return values

    def _series(self, args: list, depth: int) -> list:
        if len(args) == 1:
            column = self._column(args[0])
            if column is not None:
                return column
            single = self._eval(args[0], depth + 1)
            if isinstance(single, list):
                return single
            return [single]
        return [self._eval(arg, depth + 1) for arg in args]

    def _eval(self, node: ast.AST, depth: int) -> Any:
        self._check_depth(depth)
        if isinstance(node, ast.Expression):
            return self._eval(node.body, depth + 1)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, float):
                if not math.isfinite(node.value):
                    raise FormulaArithmeticError("Non-finite number", self.formula)
                return Decimal(repr(node.value))
            if node.value is None or isinstance(node.value, (int, str, bool)):
                return node.value
            raise FormulaUnsupportedError("Unsupported literal", self.formula)
        if isinstance(node, ast.Name):
            if node.id.lower() in _KEYWORDS and ci_tree.find_key(self.scope, node.id) is None:
                return _KEYWORDS[node.id.lower()]
            return self._resolve([node.id])
        if isinstance(node, ast.Attribute):
            path = self._path_of(node)
            if path is None:
                raise FormulaUnsupportedError("Unsupported attribute access", self.formula)
            return self._resolve(path)
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, depth + 1)
            if isinstance(node.op, ast.Not):
                return not self._truthy(operand)
            if isinstance(node.op, ast.USub):
                return -to_number(operand)
            if isinstance(node.op, ast.UAdd):
                return to_number(operand)
            raise FormulaUnsupportedError("Unsupported unary operator", self.formula)
        if isinstance(node, ast.BinOp):
            return self._binop(node, depth)
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._truthy(self._eval(v, depth + 1)) for v in node.values)
            return any(self._truthy(self._eval(v, depth + 1)) for v in node.values)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, depth + 1)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, depth + 1)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            if self._truthy(self._eval(node.test, depth + 1)):
                return self._eval(node.body, depth + 1)
            return self._eval(node.orelse, depth + 1)
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.keywords:
                raise FormulaUnsupportedError("Unsupported call", self.formula)
            fn = self.functions.get(node.func.id.upper())
            if fn is None:
                raise FormulaUnsupportedError(f"Unknown function: {node.func.id}", self.formula)
            return fn(node.args, depth)
        raise FormulaUnsupportedError(f"Unsupported expression: {type(node).__name__}", self.formula)

    def _binop(self, node: ast.BinOp, depth: int) -> Any:
        left = self._eval(node.left, depth + 1)
        right = self._eval(node.right, depth + 1)
        if isinstance(node.op, ast.Add) and isinstance(left, str) and isinstance(right, str):
            return left + right
        a = to_number(left)
        b = to_number(right)
        try:
            if isinstance(node.op, ast.Add):
                return a + b
            if isinstance(node.op, ast.Sub):
                return a - b
            if isinstance(node.op, ast.Mult):
                return a * b
            if isinstance(node.op, ast.Div):
                return a / b
            if isinstance(node.op, ast.Mod):
                return a % b
            if isinstance(node.op, ast.Pow):
                return a ** b
        except (DecimalException, ZeroDivisionError) as exc:
            raise FormulaArithmeticError(f"Arithmetic error: {exc.__class__.__name__}", self.formula) from exc
        raise FormulaUnsupportedError("Unsupported operator", self.formula)

    @staticmethod
    def _truthy(value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() not in ("", "false", "0")
        if _is_number(value):
            return to_number(value) != 0
        return bool(value)

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(left, str) and isinstance(right, str):
            a, b = left, right
        elif isinstance(op, (ast.Eq, ast.NotEq)) and (left is None or right is None or isinstance(left, bool) or isinstance(right, bool)):
            a, b = left, right
        else:
            a, b = to_number(left), to_number(right)
        try:
            return self._compare_values(op, a, b)
        except DecimalException as exc:
            raise FormulaArithmeticError(f"Comparison error: {exc.__class__.__name__}", self.formula) from exc

    def _compare_values(self, op: ast.cmpop, a: Any, b: Any) -> bool:
        if isinstance(op, ast.Eq):
            return a == b
        if isinstance(op, ast.NotEq):
            return a != b
        if isinstance(op, ast.Lt):
            return a < b
        if isinstance(op, ast.LtE):
            return a <= b
        if isinstance(op, ast.Gt):
            return a > b
        if isinstance(op, ast.GtE):
            return a >= b
        raise FormulaUnsupportedError("Unsupported comparison", self.formula)

    def _fn_sum(self, args: list, depth: int) -> Decimal:
        return sum((to_number(v) for v in self._series(args, depth)), Decimal(0))

    def _fn_count(self, args: list, depth: int) -> Decimal:
        return Decimal(len([v for v in self._series(args, depth) if v is not None]))

    def _fn_avg(self, args: list, depth: int) -> Decimal:
        values = [to_number(v) for v in self._series(args, depth)]
        if not values:
            return Decimal(0)
        return sum(values, Decimal(0)) / Decimal(len(values))

    def _fn_min(self, args: list, depth: int) -> Decimal:
        values = [to_number(v) for v in self._series(args, depth)]
        return min(values) if values else Decimal(0)

    def _fn_max(self, args: list, depth: int) -> Decimal:
        values = [to_number(v) for v in self._series(args, depth)]
        return max(values) if values else Decimal(0)

    def _fn_round(self, args: list, depth: int) -> Decimal:
        if len(args) not in (1, 2):
            raise FormulaSyntaxError("ROUND takes one or two arguments", self.formula)
        places = int(to_number(self._eval(args[1], depth + 1))) if len(args) == 2 else 0
        return round_number(self._eval(args[0], depth + 1), places)

    def _fn_abs(self, args: list, depth: int) -> Decimal:
        if len(args) != 1:
            raise FormulaSyntaxError("ABS takes one argument", self.formula)
        return abs(to_number(self._eval(args[0], depth + 1)))

    def _fn_if(self, args: list, depth: int) -> Any:
        if len(args) != 3:
            raise FormulaSyntaxError("IF takes three arguments", self.formula)
        if self._truthy(self._eval(args[0], depth + 1)):
            return self._eval(args[1], depth + 1)
        return self._eval(args[2], depth + 1)

    def _fn_coalesce(self, args: list, depth: int) -> Any:
        for arg in args:
            value = self._eval(arg, depth + 1)
            if value not in (None, ""):
                return value
        return None


def parse_formula(formula: str) -> ast.Expression:
    if not isinstance(formula, str) or not formula.strip():
        raise FormulaSyntaxError("Formula must be a non-empty string", formula if isinstance(formula, str) else None)
    try:
        return ast.parse(normalize_formula(formula), mode="eval")
    except SyntaxError as exc:
        raise FormulaSyntaxError(f"Invalid formula: {exc.msg}", formula) from exc


def eval_formula(formula: str, scope: dict, depth_limit: int = 32) -> Any:
    """Evaluate ``formula`` against ``scope``; unresolved names read as None."""
    if not isinstance(scope, dict):
        raise FormulaSyntaxError("scope must be object", formula)
    tree = parse_formula(formula)
    try:
        return _Evaluator(formula, scope, depth_limit).run(tree)
    except DecimalException as exc:
        raise FormulaArithmeticError(f"Arithmetic error: {exc.__class__.__name__}", formula) from exc


def eval_condition(formula: str | None, scope: dict) -> bool:
    if formula is None or (isinstance(formula, str) and not formula.strip()):
        return True
    return _Evaluator._truthy(eval_formula(formula, scope))
