from __future__ import annotations

import ast
import math
import operator
import re

_FULLWIDTH = str.maketrans(
    {
        "０": "0", "１": "1", "２": "2", "３": "3", "４": "4",
        "５": "5", "６": "6", "７": "7", "８": "8", "９": "9",
        "＋": "+", "－": "-", "＊": "*", "×": "*", "／": "/", "÷": "/",
        "（": "(", "）": ")", "．": ".", "，": ",",
    }
)

NUMERIC_ONLY_MARKER = re.compile(
    r"只回答数字|只输出数字|只输出结果|只要数字"
    r"|numbers?\s+only|only\s+(?:the\s+)?(?:number|digits|numeric)"
    r"|just\s+the\s+number|answer\s+with\s+(?:a|the)\s+number",
    re.IGNORECASE,
)
_LEAD_IN_PATTERN = re.compile(
    r"^(?:what\s+is|what's|calculate|compute|请问|计算一下|计算|算一下)\s*",
    re.IGNORECASE,
)
_EXPRESSION_PATTERN = re.compile(r"[\d\s+\-*/().]{1,120}")
_OPERATOR_PATTERN = re.compile(r"\d\s*\)?\s*[-+*/]\s*\(?\s*-?\s*\d")
_LEADING_NOISE = " \t\r\n:：,，、"
_TRAILING_NOISE = " \t\r\n:：,，、.。!！?？=＝"

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def isolate_expression(text: str | None) -> str | None:
    """Return the arithmetic expression ``text`` consists of, if any.

    A trailing ``=?``, a "numbers only" marker and a short lead-in such as
    "what is" are ignored; everything else must be digits, parentheses,
    ``+-*/`` and whitespace. Prose that merely contains a digit run like a
    range or a phone number yields ``None``.
    """

    if not text:
        return None

    candidate = NUMERIC_ONLY_MARKER.sub(" ", text.translate(_FULLWIDTH))
    candidate = _LEAD_IN_PATTERN.sub("", candidate.lstrip(_LEADING_NOISE))
    candidate = candidate.lstrip(_LEADING_NOISE).rstrip(_TRAILING_NOISE)
    if not _EXPRESSION_PATTERN.fullmatch(candidate):
        return None
    if not _OPERATOR_PATTERN.search(candidate):
        return None
    return candidate


def try_eval_math(text: str | None, *, lenient: bool = False) -> str | None:
    """Evaluate ``text`` as arithmetic and format the result.

    With ``lenient`` the first operator-bearing digit run inside the text is
    used when the text as a whole is not an expression. Returns ``None`` when
    nothing evaluates to a finite number.
    """

    candidate = isolate_expression(text)
    if candidate is None and lenient and text:
        candidate = _first_expression(text.translate(_FULLWIDTH))
    if candidate is None:
        return None

    try:
        tree = ast.parse(candidate.strip(), mode="eval")
        value = _evaluate(tree.body)
    except (SyntaxError, ValueError, ZeroDivisionError, OverflowError, RecursionError):
        return None

    if not math.isfinite(value):
        return None
    return format_number(value)


def format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


def _first_expression(text: str) -> str | None:
    for match in _EXPRESSION_PATTERN.finditer(text):
        candidate = match.group(0).strip()
        if _OPERATOR_PATTERN.search(candidate):
            return _balance_parentheses(candidate)
    return None


def _balance_parentheses(candidate: str) -> str:
    while candidate.endswith(")") and candidate.count(")") > candidate.count("("):
        candidate = candidate[:-1].rstrip()
    while candidate.startswith("(") and candidate.count("(") > candidate.count(")"):
        candidate = candidate[1:].lstrip()
    return candidate


def _evaluate(node: ast.AST) -> float | int:
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value

    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        return _BINARY_OPERATORS[type(node.op)](left, right)

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))

    raise ValueError(f"unsupported expression node: {type(node).__name__}")
