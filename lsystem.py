"""lsystem.py

A parametric, context-sensitive, stochastic L-system rewriting engine.

Key features:
- Phrases tokenized into symbol/parameter parts over a configurable alphabet.
- Parametric symbols whose parameters are arithmetic expressions over defines.
- Classic context syntax (``b<a>c``) with branch-aware context matching.
- Conditional, callable and structural productions.
- Stochastic productions resolved by reproducible, seeded sampling.
- Command dispatch over the final axiom for external interpreters.

Example:
  system = LSystem(alphabet="AB", axiom="A", productions={"A": "AB", "B": "A"})
  system.iterate(4)
  system.get_axiom_string()  # "ABAABABA"
"""

from __future__ import annotations

import ast
import logging
import math
import operator as op
import random
import re
from collections import ChainMap
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Literal, Union

from simpleeval import InvalidExpression, SimpleEval

logger = logging.getLogger(__name__)


# -------------------------
# Symbols
# -------------------------

BRANCH_SYMBOLS = ("[", "]")

PARAMETRIC_SYMBOLS = ("(", ")")

DEFAULT_SYMBOLS = tuple("ABCDEFGHIJKLMNOPQRSTUVWXYZ")

IGNORED_SYMBOLS = (
    "+",
    "-",
    "&",
    "^",
    "/",
    "|",
    "\\",
    "!",
    ".",
    "{",
    "}",
    *BRANCH_SYMBOLS,
    *PARAMETRIC_SYMBOLS,
)


# -------------------------
# Errors / Validation
# -------------------------


class LSystemError(ValueError):
    pass


class ConfigError(LSystemError):
    pass


class ParametricSyntaxError(ConfigError):
    pass


class ArityError(ConfigError):
    pass


class EvaluationError(LSystemError):
    pass


@dataclass(frozen=True)
class RewriteFailure:
    index: int
    part: AxiomPart
    error: LSystemError


class RewriteError(LSystemError):
    """One or more occurrences could not be rewritten during a pass.

    ``axiom`` is the result of the pass with the failing occurrences kept
    unchanged; ``passes`` counts the passes applied by the raising
    :meth:`LSystem.iterate` call, the failing one included.
    """

    def __init__(
        self, failures: list[RewriteFailure], axiom: list[AxiomPart] | None = None
    ) -> None:
        self.failures = failures
        self.axiom = axiom
        self.passes = 0
        first = failures[0]
        more = f" (and {len(failures) - 1} more)" if len(failures) > 1 else ""
        super().__init__(
            f"cannot rewrite {first.part.symbol!r} at index {first.index}: "
            f"{first.error}{more}"
        )


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


# -------------------------
# Data model
# -------------------------

Params = tuple[float, ...]


@dataclass(frozen=True)
class AxiomPart:
    symbol: str
    params: Params = ()


Axiom = list[AxiomPart]
Defines = Mapping[str, float]

Direction = Literal["before", "after"]

Condition = Callable[[Axiom, int, AxiomPart, Params], bool]
SuccessorFunction = Callable[[Axiom, int, AxiomPart, Params], Any]
Command = Callable[[int, AxiomPart, Params], None]
Sampler = Callable[[str, Sequence[float]], int]


@dataclass(frozen=True)
class PhraseSuccessor:
    phrase: str


@dataclass(frozen=True)
class AxiomSuccessor:
    axiom: tuple[AxiomPart, ...]


@dataclass(frozen=True)
class CallableSuccessor:
    func: SuccessorFunction


@dataclass(frozen=True)
class WeightedSuccessor:
    successor: Successor
    weight: float


@dataclass(frozen=True)
class StochasticSuccessor:
    choices: tuple[WeightedSuccessor, ...]

    @property
    def weights(self) -> list[float]:
        return [c.weight for c in self.choices]


Successor = Union[PhraseSuccessor, AxiomSuccessor, CallableSuccessor, StochasticSuccessor]

_SUCCESSOR_TYPES = (PhraseSuccessor, AxiomSuccessor, CallableSuccessor, StochasticSuccessor)


@dataclass(frozen=True)
class PatternPart:
    """One element of a context pattern.

    ``params`` is ``None`` when the pattern does not constrain parameters.
    Otherwise it holds the raw parameter texts: identifiers bind the matched
    values, anything else must evaluate equal to them.
    """

    symbol: str
    params: tuple[str, ...] | None = None


@dataclass(frozen=True)
class Context:
    before: tuple[PatternPart, ...] = ()
    after: tuple[PatternPart, ...] = ()


@dataclass(frozen=True)
class Production:
    successor: Successor
    context: Context | None = None
    condition: Condition | None = None
    params: tuple[str, ...] = ()


class _NoMatch:
    """Resolution outcome meaning "keep the original part"."""

    _instance: _NoMatch | None = None

    def __new__(cls) -> _NoMatch:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH = _NoMatch()


def _is_no_match(result: Any) -> bool:
    # An empty phrase from a callable keeps the part; an empty list deletes it.
    return result is NO_MATCH or result is None or result is False or result == ""


# -------------------------
# Parameter expressions
# -------------------------

_OPERATORS = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.USub: op.neg,
    ast.UAdd: op.pos,
}

# Node kinds simpleeval supports that parameter expressions must not use.
_EXCLUDED_NODES = (ast.Attribute, ast.Subscript, ast.IfExp, ast.Call, ast.Compare, ast.BoolOp)


def evaluate_expression(expr: str, defines: Defines | None = None) -> float:
    """Evaluate a parameter expression to a finite number.

    Only numeric literals, define names, ``+ - * /`` and parentheses are
    accepted; there are no functions.
    """
    if not expr.strip():
        raise EvaluationError("empty parameter expression")
    evaluator = SimpleEval(operators=_OPERATORS, functions={}, names=dict(defines or {}))
    for node in _EXCLUDED_NODES:
        evaluator.nodes.pop(node, None)
    try:
        value = evaluator.eval(expr)
    except (InvalidExpression, SyntaxError, ArithmeticError, TypeError) as e:
        raise EvaluationError(f"cannot evaluate {expr!r}: {e}") from e
    if not _is_number(value):
        raise EvaluationError(f"{expr!r} does not evaluate to a finite number: {value!r}")
    return value


def _format_number(x: float) -> str:
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    return repr(x)


# -------------------------
# Tokenizer / Normalizer
# -------------------------

_WHITESPACE = re.compile(r"\s+")


def _group_end(text: str, start: int) -> int:
    """Return the index of the close marker matching the open marker at ``start``."""
    depth = 0
    for i in range(start, len(text)):
        if text[i] == PARAMETRIC_SYMBOLS[0]:
            depth += 1
        elif text[i] == PARAMETRIC_SYMBOLS[1]:
            depth -= 1
            if depth == 0:
                return i
    raise ParametricSyntaxError(f"unclosed parametric group in {text!r}")


def split_params(body: str) -> list[str]:
    """Split the inside of a parametric group on its top-level commas."""
    if not body:
        return []
    params: list[str] = []
    depth = 0
    current = ""
    for ch in body:
        if ch == "," and depth == 0:
            params.append(current)
            current = ""
            continue
        if ch == PARAMETRIC_SYMBOLS[0]:
            depth += 1
        elif ch == PARAMETRIC_SYMBOLS[1]:
            depth -= 1
        current += ch
    params.append(current)
    if not all(params):
        raise ParametricSyntaxError(f"empty parameter in ({body})")
    return params


def scan_phrase(phrase: str, symbols: Iterable[str]) -> list[tuple[str, list[str] | None]]:
    """Split a phrase into ``(symbol, raw_params)`` pairs.

    Characters accumulate into a candidate until it names a known symbol. A
    candidate immediately followed by the parametric open marker swallows the
    whole group; ``raw_params`` is ``None`` for symbols written without one.
    """
    known = symbols if isinstance(symbols, frozenset) else frozenset(symbols)
    text = _WHITESPACE.sub("", phrase)

    out: list[tuple[str, list[str] | None]] = []
    candidate = ""
    i = 0
    while i < len(text):
        # Groups are consumed whole below, so a marker reaching the candidate is unbalanced.
        if text[i] in PARAMETRIC_SYMBOLS:
            raise ParametricSyntaxError(
                f"unbalanced parametric marker {text[i]!r} in {phrase!r}"
            )
        candidate += text[i]
        i += 1

        raw: list[str] | None = None
        if i < len(text) and text[i] == PARAMETRIC_SYMBOLS[0]:
            end = _group_end(text, i)
            raw = split_params(text[i + 1 : end])
            i = end + 1
            if candidate not in known:
                raise ParametricSyntaxError(
                    f"unknown parametric symbol {candidate!r} in {phrase!r}"
                )

        if candidate in known:
            out.append((candidate, raw))
            candidate = ""

    if candidate:
        raise ParametricSyntaxError(f"unrecognized symbols {candidate!r} in {phrase!r}")
    return out


def tokenize(
    phrase: str,
    alphabet: Iterable[str],
    ignored_symbols: Iterable[str] = IGNORED_SYMBOLS,
    defines: Defines | None = None,
) -> Axiom:
    """Turn a phrase into an axiom, evaluating parameters under ``defines``."""
    symbols = frozenset(alphabet) | frozenset(ignored_symbols)
    axiom: Axiom = []
    for symbol, raw in scan_phrase(phrase, symbols):
        if raw is None:
            axiom.append(AxiomPart(symbol))
            continue
        try:
            params = tuple(evaluate_expression(p, defines) for p in raw)
        except EvaluationError as e:
            raise EvaluationError(f"{symbol!r} in {phrase!r}: {e}") from e
        axiom.append(AxiomPart(symbol, params))
    return axiom


def _coerce_part(item: Any, symbols: frozenset[str]) -> AxiomPart:
    if isinstance(item, Mapping):
        _require(
            "symbol" in item and set(item) <= {"symbol", "params"},
            f"axiom part mappings take 'symbol' and 'params', got {dict(item)!r}",
        )
        params = item.get("params", ())
        _require(
            isinstance(params, Sequence) and not isinstance(params, str),
            f"params of {item['symbol']!r} must be a list of numbers",
        )
        item = AxiomPart(item["symbol"], tuple(params))
    _require(isinstance(item, AxiomPart), f"expected an axiom part, got {item!r}")
    _require(item.symbol in symbols, f"unknown symbol {item.symbol!r}")
    _require(
        all(_is_number(p) for p in item.params),
        f"params of {item.symbol!r} must be finite numbers: {item.params!r}",
    )
    return item


def normalize_axiom(
    value: Any,
    alphabet: Iterable[str],
    ignored_symbols: Iterable[str] = IGNORED_SYMBOLS,
    defines: Defines | None = None,
) -> Axiom:
    """Normalize a phrase, part, or sequence of parts into an axiom."""
    if isinstance(value, str):
        return tokenize(value, alphabet, ignored_symbols, defines)
    symbols = frozenset(alphabet) | frozenset(ignored_symbols)
    if isinstance(value, (AxiomPart, Mapping)):
        return [_coerce_part(value, symbols)]
    if isinstance(value, Iterable):
        return [_coerce_part(item, symbols) for item in value]
    raise ConfigError(f"cannot build an axiom from {value!r}")


def format_axiom(axiom: Iterable[AxiomPart]) -> str:
    """Render an axiom back to phrase text, parameters included."""
    out: list[str] = []
    for part in axiom:
        if part.params:
            params = ",".join(_format_number(p) for p in part.params)
            out.append(f"{part.symbol}({params})")
        else:
            out.append(part.symbol)
    return "".join(out)


# -------------------------
# Production syntax
# -------------------------

_CONTEXT_BEFORE = re.compile(r"(.+)<(.+)", re.S)
_CONTEXT_AFTER = re.compile(r"(.+)>(.+)", re.S)

_PRODUCTION_KEYS = frozenset({"successor", "stochastic", "context", "condition"})


def split_classic_context(key: str) -> tuple[str, str | None, str | None]:
    """Split ``before<SYMBOL>after`` into ``(SYMBOL, before, after)``."""
    symbol = _WHITESPACE.sub("", key)
    before = after = None

    m = _CONTEXT_BEFORE.fullmatch(symbol)
    if m:
        before, symbol = m.group(1), m.group(2)

    m = _CONTEXT_AFTER.fullmatch(symbol)
    if m:
        symbol, after = m.group(1), m.group(2)

    return symbol, before, after


def split_parametric_symbol(text: str) -> tuple[str, tuple[str, ...]]:
    """Split ``S(a,b)`` into ``("S", ("a", "b"))``."""
    text = _WHITESPACE.sub("", text)
    start = text.find(PARAMETRIC_SYMBOLS[0])
    if start <= 0:
        if PARAMETRIC_SYMBOLS[0] in text or PARAMETRIC_SYMBOLS[1] in text:
            raise ParametricSyntaxError(f"malformed parametric symbol {text!r}")
        return text, ()
    if _group_end(text, start) != len(text) - 1:
        raise ParametricSyntaxError(f"trailing text after parameters in {text!r}")
    return text[:start], tuple(split_params(text[start + 1 : -1]))


def parse_pattern(
    pattern: str | Sequence[str] | Sequence[PatternPart], symbols: frozenset[str]
) -> tuple[PatternPart, ...]:
    """Normalize a context pattern to a flat tuple of pattern parts."""
    if isinstance(pattern, str):
        return tuple(
            PatternPart(symbol, None if raw is None else tuple(raw))
            for symbol, raw in scan_phrase(pattern, symbols)
        )
    parts: list[PatternPart] = []
    for item in pattern:
        if isinstance(item, PatternPart):
            parts.append(item)
            continue
        _require(
            isinstance(item, str) and item in symbols,
            f"unknown context symbol {item!r}",
        )
        parts.append(PatternPart(item))
    return tuple(parts)


def _parse_context(value: Any, symbols: frozenset[str]) -> Context:
    if isinstance(value, Context):
        return value
    _require(
        isinstance(value, Mapping) and set(value) <= {"before", "after"},
        f"context must be an object with 'before' and/or 'after', got {value!r}",
    )
    return Context(
        before=parse_pattern(value.get("before") or (), symbols),
        after=parse_pattern(value.get("after") or (), symbols),
    )


def to_successor(value: Any, symbols: frozenset[str]) -> Successor:
    """Classify a successor value into its variant."""
    if isinstance(value, _SUCCESSOR_TYPES):
        return value
    if isinstance(value, str):
        # Syntax is checked now; parameters are evaluated at rewrite time.
        scan_phrase(value, symbols)
        return PhraseSuccessor(value)
    if callable(value):
        return CallableSuccessor(value)
    if isinstance(value, Mapping) and set(value) == {"stochastic"}:
        return _stochastic_successor(value["stochastic"], symbols)
    if isinstance(value, (AxiomPart, Mapping)):
        return AxiomSuccessor((_coerce_part(value, symbols),))
    if isinstance(value, Iterable):
        return AxiomSuccessor(tuple(_coerce_part(item, symbols) for item in value))
    raise ConfigError(f"unsupported successor {value!r}")


def _stochastic_successor(items: Any, symbols: frozenset[str]) -> StochasticSuccessor:
    _require(
        isinstance(items, Sequence) and not isinstance(items, str) and len(items) > 0,
        "stochastic must be a non-empty list of {successor, weight} items",
    )
    choices: list[WeightedSuccessor] = []
    for i, item in enumerate(items):
        if isinstance(item, WeightedSuccessor):
            choices.append(item)
            continue
        _require(
            isinstance(item, Mapping) and set(item) == {"successor", "weight"},
            f"stochastic[{i}] must have exactly 'successor' and 'weight'",
        )
        weight = item["weight"]
        _require(
            _is_number(weight) and weight >= 0,
            f"stochastic[{i}].weight must be a non-negative number, got {weight!r}",
        )
        choices.append(
            WeightedSuccessor(to_successor(item["successor"], symbols), float(weight))
        )
    _require(
        math.fsum(c.weight for c in choices) > 0,
        "stochastic weights must sum to a positive total",
    )
    return StochasticSuccessor(tuple(choices))


def normalize_production(
    key: str, value: Any, alphabet: Iterable[str], symbols: frozenset[str]
) -> tuple[str, Production]:
    """Build ``(symbol, production)`` from a registration key and value.

    The key may use the classic ``before<SYMBOL(a,b)>after`` syntax. An
    explicit ``context`` in the value wins over the classic one.
    """
    _require(isinstance(key, str) and key.strip() != "", "production key must be a non-empty string")

    head, before, after = split_classic_context(key)
    symbol, names = split_parametric_symbol(head)
    _require(symbol in frozenset(alphabet), f"production symbol {symbol!r} is not in the alphabet")
    _require(
        all(n.isidentifier() for n in names) and len(set(names)) == len(names),
        f"parameters of {key!r} must be distinct names",
    )

    if isinstance(value, Production):
        production = value
    elif isinstance(value, Mapping) and "symbol" not in value:
        unknown = set(value) - _PRODUCTION_KEYS
        _require(not unknown, f"unknown production keys for {key!r}: {sorted(unknown)}")
        _require(
            ("successor" in value) != ("stochastic" in value),
            f"production {key!r} needs exactly one of 'successor' or 'stochastic'",
        )
        if "stochastic" in value:
            successor: Successor = _stochastic_successor(value["stochastic"], symbols)
        else:
            successor = to_successor(value["successor"], symbols)
        condition = value.get("condition")
        _require(condition is None or callable(condition), f"condition of {key!r} must be callable")
        context = value.get("context")
        production = Production(
            successor=successor,
            context=None if context is None else _parse_context(context, symbols),
            condition=condition,
        )
    else:
        production = Production(to_successor(value, symbols))

    if production.context is None and (before or after):
        production = replace(
            production,
            context=Context(
                before=parse_pattern(before or "", symbols),
                after=parse_pattern(after or "", symbols),
            ),
        )
    return symbol, replace(production, params=names or production.params)


def bind_params(names: Sequence[str], part: AxiomPart) -> dict[str, float]:
    """Bind declared parameter names to an occurrence's values."""
    if not names:
        return {}
    if len(names) != len(part.params):
        raise ArityError(
            f"{part.symbol!r} declares parameters {tuple(names)} but the occurrence "
            f"carries {len(part.params)} value(s)"
        )
    return dict(zip(names, part.params))


# -------------------------
# Context matching
# -------------------------


def _match_pattern_params(
    wanted: PatternPart, part: AxiomPart, defines: Defines | None, captured: dict[str, float]
) -> bool:
    if wanted.params is None:
        return True
    if len(wanted.params) != len(part.params):
        return False
    for raw, value in zip(wanted.params, part.params):
        if raw.isidentifier():
            captured[raw] = value
        elif evaluate_expression(raw, defines) != value:
            return False
    return True


def match_context(
    axiom: Sequence[AxiomPart],
    index: int,
    pattern: str | Sequence[str] | Sequence[PatternPart],
    direction: Direction,
    alphabet: Iterable[str],
    ignored_symbols: Iterable[str] = IGNORED_SYMBOLS,
    defines: Defines | None = None,
    bindings: dict[str, float] | None = None,
) -> bool:
    """Check whether the neighbourhood of ``axiom[index]`` matches ``pattern``.

    The axiom is walked outward from ``index``. Branches met on the way are
    transparent unless the pattern itself names the branch markers, in which
    case the walk follows the branch and compares its content. Ignored
    symbols outside branches are transparent too. When ``bindings`` is given,
    parameter names captured by the pattern are added to it on success.
    """
    _require(direction in ("before", "after"), f"direction must be 'before' or 'after', got {direction!r}")
    ignored = frozenset(ignored_symbols)
    parts = parse_pattern(pattern, frozenset(alphabet) | ignored)
    if not parts:
        return True

    if direction == "before":
        step = -1
        axiom_index = index - 1
        match_index = len(parts) - 1
        overflow = -1
        branch_start, branch_end = BRANCH_SYMBOLS[1], BRANCH_SYMBOLS[0]
    else:
        step = 1
        axiom_index = index + 1
        match_index = 0
        overflow = len(parts)
        branch_start, branch_end = BRANCH_SYMBOLS

    depth = 0
    explicit = 0
    captured: dict[str, float] = {}

    while 0 <= axiom_index < len(axiom):
        part = axiom[axiom_index]
        wanted = parts[match_index]

        if part.symbol == wanted.symbol and (depth == 0 or explicit > 0):
            if part.symbol == branch_start:
                explicit += 1
                depth += 1
                match_index += step
            elif part.symbol == branch_end:
                explicit = max(0, explicit - 1)
                depth = max(0, depth - 1)
                # Only a branch left completely advances the pattern.
                if explicit == 0:
                    match_index += step
            else:
                if not _match_pattern_params(wanted, part, defines, captured):
                    return False
                match_index += step

            if match_index == overflow:
                if bindings is not None:
                    bindings.update(captured)
                return True
        elif part.symbol == branch_start:
            depth += 1
            if explicit > 0:
                explicit += 1
        elif part.symbol == branch_end:
            depth = max(0, depth - 1)
            if explicit > 0:
                explicit = max(0, explicit - 1)
        elif (
            depth == 0 or (explicit > 0 and wanted.symbol != branch_end)
        ) and part.symbol not in ignored:
            return False

        axiom_index += step

    return False


# -------------------------
# Stochastic sampling
# -------------------------


def sample_index(seed: str, weights: Sequence[float]) -> int:
    """Pick an index with probability proportional to its weight.

    Pure in ``(seed, weights)``: every call seeds its own generator, so a
    given seed yields the same index on every run and platform.
    """
    _require(len(weights) > 0, "cannot sample from an empty weight list")
    _require(
        all(_is_number(w) and w >= 0 for w in weights),
        f"weights must be non-negative numbers: {list(weights)}",
    )
    total = math.fsum(weights)
    _require(total > 0, f"weights must sum to a positive total: {list(weights)}")

    pick = random.Random(seed).random() * total
    cumulative = 0.0
    for i, w in enumerate(weights):
        cumulative += w
        if pick < cumulative:
            return i
    # Float rounding can leave pick == total; land on the last live weight.
    return max(i for i, w in enumerate(weights) if w > 0)


# -------------------------
# Engine
# -------------------------


def _as_symbols(symbols: Iterable[str], path: str) -> tuple[str, ...]:
    out = tuple(symbols)
    _require(
        all(isinstance(s, str) and s != "" and not _WHITESPACE.search(s) for s in out),
        f"{path} must contain non-empty symbols without whitespace",
    )
    return out


class LSystem:
    """An L-system: an axiom, defines, productions and commands.

    The instance owns its tables. Rewriting is synchronous; callbacks must not
    mutate the instance while a pass or :meth:`run` is in progress.
    """

    def __init__(
        self,
        alphabet: Iterable[str],
        *,
        ignored_symbols: Iterable[str] = IGNORED_SYMBOLS,
        axiom: Any = "",
        iterations: float = 1,
        defines: Mapping[str, float] | None = None,
        productions: Mapping[str, Any] | None = None,
        commands: Mapping[str, Command] | None = None,
        sampler: Sampler = sample_index,
        seed: str | int | None = None,
        strict: bool = True,
    ) -> None:
        self.alphabet = _as_symbols(alphabet, "alphabet")
        _require(len(self.alphabet) > 0, "alphabet must not be empty")
        _require(
            not any(m in s for s in self.alphabet for m in PARAMETRIC_SYMBOLS),
            "alphabet symbols must not contain parametric markers",
        )
        self.ignored_symbols = _as_symbols(ignored_symbols, "ignored_symbols")
        self._symbols = frozenset(self.alphabet) | frozenset(self.ignored_symbols)

        _require(callable(sampler), "sampler must be callable")
        self.sampler = sampler
        self.seed = seed
        self.strict = strict

        self.defines: dict[str, float] = {}
        self.productions: dict[str, list[Production]] = {}
        self.commands: dict[str, Command] = {}
        self.errors: list[RewriteFailure] = []

        if defines:
            self.set_defines(defines)
        self.axiom: Axiom = []
        self.set_axiom(axiom)

        _require(_is_number(iterations), "iterations must be a number")
        self.iterations = math.floor(iterations)
        _require(self.iterations >= 0, "iterations must be >= 0")

        if productions:
            self.set_productions(productions)
        if commands:
            self.set_commands(commands)

    def __repr__(self) -> str:
        return (
            f"LSystem(alphabet={''.join(self.alphabet)!r}, "
            f"axiom={format_axiom(self.axiom)!r}, iterations={self.iterations})"
        )

    # Axiom

    def normalize(self, value: Any) -> Axiom:
        return normalize_axiom(value, self.alphabet, self.ignored_symbols, self.defines)

    def set_axiom(self, axiom: Any) -> None:
        self.axiom = self.normalize(axiom)

    def get_axiom_string(self) -> str:
        return "".join(part.symbol for part in self.axiom)

    # Defines

    def set_define(self, key: str, define: float) -> None:
        _require(isinstance(key, str) and key.isidentifier(), f"define name {key!r} must be an identifier")
        _require(_is_number(define), f"define {key!r} must be a finite number, got {define!r}")
        self.defines[key] = define

    def set_defines(self, defines: Mapping[str, float]) -> None:
        self.clear_defines()
        for key, define in defines.items():
            self.set_define(key, define)

    def clear_defines(self) -> None:
        self.defines = {}

    # Productions

    def set_production(self, key: str, production: Any) -> None:
        """Register a production; repeated symbols accumulate in order."""
        symbol, prod = normalize_production(key, production, self.alphabet, self._symbols)
        self.productions.setdefault(symbol, []).append(prod)

    def set_productions(self, productions: Mapping[str, Any]) -> None:
        self.clear_productions()
        for key, production in productions.items():
            self.set_production(key, production)

    def clear_productions(self) -> None:
        self.productions = {}

    # Commands

    def set_command(self, symbol: str, command: Command) -> None:
        _require(symbol in self._symbols, f"command symbol {symbol!r} is not a known symbol")
        _require(callable(command), f"command for {symbol!r} must be callable")
        self.commands[symbol] = command

    def set_commands(self, commands: Mapping[str, Command]) -> None:
        self.clear_commands()
        for symbol, command in commands.items():
            self.set_command(symbol, command)

    def clear_commands(self) -> None:
        self.commands = {}

    # Rewriting

    def _match_production_context(
        self, context: Context, index: int, bindings: dict[str, float]
    ) -> bool:
        for direction, pattern in (("before", context.before), ("after", context.after)):
            if pattern and not match_context(
                self.axiom,
                index,
                pattern,
                direction,  # type: ignore[arg-type]
                self.alphabet,
                self.ignored_symbols,
                self.defines,
                bindings,
            ):
                return False
        return True

    def _expand_successor(
        self,
        production: Production,
        successor: Successor,
        part: AxiomPart,
        index: int,
        bindings: dict[str, float],
        depth: int = 0,
    ) -> Any:
        if isinstance(successor, StochasticSuccessor):
            seed = f"{part.symbol}-{index}"
            if self.seed is not None:
                seed = f"{self.seed}-{seed}"
            if depth:
                seed = f"{seed}:{depth}"
            choice = successor.choices[self.sampler(seed, successor.weights)]
            return self._expand_successor(
                production, choice.successor, part, index, bindings, depth + 1
            )
        if isinstance(successor, PhraseSuccessor):
            scope = ChainMap(bind_params(production.params, part), bindings, self.defines)
            return tokenize(successor.phrase, self.alphabet, self.ignored_symbols, scope)
        if isinstance(successor, CallableSuccessor):
            return successor.func(self.axiom, index, part, part.params)
        if isinstance(successor, AxiomSuccessor):
            return list(successor.axiom)
        raise AssertionError(f"unhandled successor {successor!r}")

    def get_production_result(
        self, production: Production, part: AxiomPart, index: int, recursive: bool = False
    ) -> Any:
        """Resolve one production for ``part`` at ``index``.

        Returns the successor content, or the part itself when the production
        does not apply. With ``recursive`` set, ``NO_MATCH`` is returned
        instead so the caller can try the next candidate.
        """
        bindings: dict[str, float] = {}
        if production.condition is not None and not production.condition(
            self.axiom, index, part, part.params
        ):
            result: Any = NO_MATCH
        elif production.context is not None and not self._match_production_context(
            production.context, index, bindings
        ):
            result = NO_MATCH
        else:
            result = self._expand_successor(
                production, production.successor, part, index, bindings
            )

        if _is_no_match(result):
            return NO_MATCH if recursive else part
        return result

    def _rewrite_part(self, part: AxiomPart, index: int) -> Any:
        for production in self.productions.get(part.symbol, ()):
            result = self.get_production_result(production, part, index, recursive=True)
            if result is not NO_MATCH:
                return result
        return part

    def apply_productions(self) -> Axiom:
        """Run one rewrite pass and return the new axiom without storing it."""
        axiom: Axiom = []
        failures: list[RewriteFailure] = []

        for index, part in enumerate(self.axiom):
            try:
                axiom.extend(self.normalize(self._rewrite_part(part, index)))
            except LSystemError as e:
                failures.append(RewriteFailure(index, part, e))
                axiom.append(part)

        self.errors = failures
        if failures:
            if self.strict:
                raise RewriteError(failures, axiom)
            logger.warning(
                "%d occurrence(s) kept unchanged after rewrite errors; first: %s",
                len(failures),
                failures[0].error,
            )
        return axiom

    def iterate(self, iterations: float | None = None) -> Axiom:
        if iterations is None:
            iterations = self.iterations
        _require(_is_number(iterations), "iterations must be a number")
        n = math.floor(iterations)
        _require(n >= 0, "iterations must be >= 0")

        for i in range(n):
            try:
                self.axiom = self.apply_productions()
            except RewriteError as e:
                # The failed pass is committed; its failing occurrences stay as they were.
                if e.axiom is not None:
                    self.axiom = e.axiom
                e.passes = self.iterations = i + 1
                raise
            logger.debug("pass %d/%d: %d parts", i + 1, n, len(self.axiom))
        self.iterations = n
        return self.axiom

    # Interpretation

    def run(self) -> None:
        """Dispatch registered commands over the current axiom."""
        for index, part in enumerate(self.axiom):
            command = self.commands.get(part.symbol)
            if command is not None:
                command(index, part, part.params)
