#!/usr/bin/env python3
"""lsystem_expander.py

A caching, stochastic L-system expansion engine.

Key features:
- Context-free and context-sensitive productions.
- Ambiguous productions resolved with a seeded, per-expander random source.
- Every computed level is memoised; later queries never redo work.
- Reproducible: the same grammar and seed give the same levels in any query
  order.
- JSON grammar configs and a small CLI for experimentation.

Run:
  python lsystem_expander.py expand grammar.json --level 4 --seed 7
  python lsystem_expander.py levels grammar.json --upto 6
  python lsystem_expander.py --help
"""

from __future__ import annotations

import argparse
import json
import logging
import random
import re
import sys
import threading
import types
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, cast

Token = str
Symbols = tuple[Token, ...]
Alternatives = tuple[Symbols, ...]

logger = logging.getLogger("lsystem_expander")


# -------------------------
# Errors / Validation
# -------------------------


class GrammarError(ValueError):
    pass


class InvalidArgumentError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise GrammarError(msg)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _as_list(x: Any, path: str) -> list[Any]:
    _require(isinstance(x, list), f"{path} must be an array")
    return cast(list[Any], x)


def _as_symbols(x: Any, path: str) -> Symbols:
    """Accept either a whitespace-separated string or an array of tokens."""
    if isinstance(x, str):
        return tokenize(x)
    items = _as_list(x, path)
    return tuple(_as_str(t, f"{path}[{i}]") for i, t in enumerate(items))


# -------------------------
# Tokenizer
# -------------------------


def tokenize(text: str) -> Symbols:
    """Split a symbol specification on whitespace, keeping order."""
    return tuple(text.split())


# -------------------------
# Grammar model
# -------------------------


@dataclass(frozen=True)
class ContextRule:
    """A window of tokens that rewrites the token at ``center`` when matched."""

    pattern: Symbols
    center: int
    alternatives: Alternatives

    def __post_init__(self) -> None:
        if not self.pattern:
            raise GrammarError("context rule pattern must be non-empty")
        object.__setattr__(self, "pattern", tuple(self.pattern))
        object.__setattr__(
            self, "alternatives", tuple(tuple(a) for a in self.alternatives)
        )

    def matches(self, symbols: Sequence[Token], position: int) -> Alternatives:
        """Return the alternatives if the window around position equals pattern.

        A window reaching before index 0 or past the end never matches.
        """
        start = position - self.center
        end = start + len(self.pattern)
        if start < 0 or end > len(symbols):
            return ()
        for offset, token in enumerate(self.pattern):
            if symbols[start + offset] != token:
                return ()
        return self.alternatives


@dataclass(frozen=True)
class Grammar:
    axiom: Symbols
    # raw symbol-spec key -> replacement alternatives; a key may embed a
    # leading context offset, e.g. "1 a B c"
    rules: Mapping[str, Alternatives] = field(default_factory=dict)
    context_rules: tuple[ContextRule, ...] = ()
    name: str = "L-System"

    def __post_init__(self) -> None:
        # private read-only copy; later edits to the caller's dict are not seen
        rules = {k: tuple(tuple(a) for a in alts) for k, alts in self.rules.items()}
        object.__setattr__(self, "axiom", tuple(self.axiom))
        object.__setattr__(self, "rules", types.MappingProxyType(rules))
        object.__setattr__(self, "context_rules", tuple(self.context_rules))

    def __hash__(self) -> int:
        return hash(
            (self.axiom, tuple(self.rules.items()), self.context_rules, self.name)
        )

    def get_replacements(self, symbol: str) -> Alternatives:
        return self.rules.get(symbol, ())

    def symbols_with_replacements(self) -> list[str]:
        return [key for key, alts in self.rules.items() if alts]


def make_grammar(
    axiom: str | Iterable[Token],
    rules: Mapping[str, Iterable[str | Iterable[Token]]] | None = None,
    *,
    context_rules: Iterable[ContextRule] = (),
    name: str = "L-System",
) -> Grammar:
    """Convenience constructor normalising strings and lists into tuples."""

    def _seq(x: str | Iterable[Token]) -> Symbols:
        return tokenize(x) if isinstance(x, str) else tuple(x)

    normalised: dict[str, Alternatives] = {}
    for key, alts in (rules or {}).items():
        normalised[key] = tuple(_seq(a) for a in alts)
    return Grammar(
        axiom=_seq(axiom),
        rules=normalised,
        context_rules=tuple(context_rules),
        name=name,
    )


# -------------------------
# Context index
# -------------------------


_OFFSET_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class ContextIndex:
    rules: tuple[ContextRule, ...]
    # True only if some rule carries a real context window; single-token
    # rules alone keep the grammar in plain mode.
    has_contexts: bool


def build_context_index(grammar: Grammar) -> ContextIndex:
    """Derive the context rules of a grammar.

    Each key with replacements is tokenized. A single token is a context-free
    rule expressed as a one-token window. Two or more tokens must start with an
    integer offset ``c`` such that ``0 <= c + 1 < len(tokens)``; the remaining
    tokens become the pattern and ``c`` its center. Keys that fail either check
    are dropped entirely, so their replacements are unreachable in context
    mode. Explicit ``grammar.context_rules`` are appended as-is.
    """
    rules: list[ContextRule] = []
    has_contexts = False

    for key in grammar.symbols_with_replacements():
        tokens = tokenize(key)
        alternatives = grammar.get_replacements(key)
        if not tokens:
            continue
        if len(tokens) == 1:
            rules.append(ContextRule(tokens, 0, alternatives))
            continue
        if not _OFFSET_RE.fullmatch(tokens[0]):
            logger.debug("dropping context key %r: offset is not an integer", key)
            continue
        center = int(tokens[0])
        if not 0 <= center + 1 < len(tokens):
            logger.debug("dropping context key %r: offset %d out of range", key, center)
            continue
        has_contexts = True
        rules.append(ContextRule(tokens[1:], center, alternatives))

    if grammar.context_rules:
        has_contexts = True
        rules.extend(grammar.context_rules)

    logger.debug(
        "context index for %r: %d rules, contexts=%s",
        grammar.name,
        len(rules),
        has_contexts,
    )
    return ContextIndex(rules=tuple(rules), has_contexts=has_contexts)


# -------------------------
# Rewrite passes
# -------------------------

Chooser = Callable[[Token, Sequence[Symbols]], Symbols]


class _CountingChooser:
    """Picks among alternatives, drawing from rng only when ambiguous."""

    def __init__(self, rng: random.Random) -> None:
        self.rng = rng
        self.draws = 0

    def __call__(self, token: Token, alternatives: Sequence[Symbols]) -> Symbols:
        if not alternatives:
            return (token,)
        if len(alternatives) == 1:
            return alternatives[0]
        self.draws += 1
        return alternatives[self.rng.randrange(len(alternatives))]


def rewrite_plain(
    symbols: Sequence[Token], grammar: Grammar, choose: Chooser
) -> Symbols:
    """One generation looking replacements up by exact symbol."""
    out: list[Token] = []
    for token in symbols:
        out.extend(choose(token, grammar.get_replacements(token)))
    return tuple(out)


def rewrite_context(
    symbols: Sequence[Token], index: ContextIndex, choose: Chooser
) -> Symbols:
    """One generation matching every context rule at every position.

    All rules firing at a position pool their alternatives into a single
    candidate list, in index order.
    """
    out: list[Token] = []
    for i, token in enumerate(symbols):
        candidates: list[Symbols] = []
        for rule in index.rules:
            candidates.extend(rule.matches(symbols, i))
        out.extend(choose(token, candidates))
    return tuple(out)


# -------------------------
# Expander
# -------------------------


Mode = Literal["plain", "context"]


class Expander:
    """Expands a grammar level by level, caching every level computed.

    Level 0 is the axiom. Random draws are consumed level by level and left
    to right within a level, so the cache contents depend only on the grammar
    and the seed, never on the order levels are requested in.
    """

    def __init__(self, grammar: Grammar, seed: int | None = None) -> None:
        if seed is None:
            seed = random.getrandbits(63)
        self.grammar = grammar
        self.seed = seed
        self.index = build_context_index(grammar)
        self.mode: Mode = "context" if self.index.has_contexts else "plain"
        self._choose = _CountingChooser(random.Random(seed))
        self._cache: list[Symbols] = [tuple(grammar.axiom)]
        self._grow_lock = threading.Lock()

    @property
    def draws(self) -> int:
        """Number of random draws consumed so far."""
        return self._choose.draws

    @property
    def cached_levels(self) -> int:
        return len(self._cache)

    def _expand(self, symbols: Symbols) -> Symbols:
        if self.mode == "context":
            return rewrite_context(symbols, self.index, self._choose)
        return rewrite_plain(symbols, self.grammar, self._choose)

    def expansion_for_level(self, level: int) -> Symbols:
        """Return the symbols after ``level`` rewrite passes.

        Raises InvalidArgumentError if level is negative.
        """
        if isinstance(level, bool) or not isinstance(level, int):
            raise InvalidArgumentError(f"Recursion level {level!r} is not an integer")
        if level < 0:
            raise InvalidArgumentError(f"Recursion level {level} impossible!")

        cache = self._cache
        if level < len(cache):
            return cache[level]

        with self._grow_lock:
            while len(cache) <= level:
                nxt = self._expand(cache[-1])
                cache.append(nxt)
                logger.debug(
                    "level %d: %d symbols, %d draws so far",
                    len(cache) - 1,
                    len(nxt),
                    self.draws,
                )
            return cache[level]


# -------------------------
# Grammar config parsing
# -------------------------


@dataclass(frozen=True)
class GrammarConfig:
    grammar: Grammar
    seed: int | None
    level: int


def _parse_alternatives(x: Any, path: str) -> Alternatives:
    if isinstance(x, str):
        return (tokenize(x),)
    items = _as_list(x, path)
    return tuple(_as_symbols(a, f"{path}[{i}]") for i, a in enumerate(items))


def _parse_context_rule(x: Any, path: str) -> ContextRule:
    obj = _as_dict(x, path)
    pattern = _as_symbols(obj.get("pattern", ""), f"{path}.pattern")
    _require(len(pattern) > 0, f"{path}.pattern must be non-empty")
    center = _as_int(obj.get("center", 0), f"{path}.center")
    _require(
        0 <= center < len(pattern),
        f"{path}.center must index into the pattern (0..{len(pattern) - 1})",
    )
    alternatives = _parse_alternatives(
        obj.get("alternatives", []), f"{path}.alternatives"
    )
    return ContextRule(pattern, center, alternatives)


def parse_grammar(obj: dict[str, Any]) -> GrammarConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "L-System"), "name")
    axiom = _as_symbols(obj.get("axiom", ""), "axiom")
    _require(len(axiom) > 0, "axiom must be non-empty")

    rules_obj = _as_dict(obj.get("rules", {}), "rules")
    rules: dict[str, Alternatives] = {}
    for k, v in rules_obj.items():
        rules[k] = _parse_alternatives(v, f"rules['{k}']")

    ctx_list = _as_list(obj.get("context_rules", []), "context_rules")
    context_rules = tuple(
        _parse_context_rule(c, f"context_rules[{i}]") for i, c in enumerate(ctx_list)
    )

    seed = obj.get("seed")
    if seed is not None:
        seed = _as_int(seed, "seed")

    level = _as_int(obj.get("level", 0), "level")
    _require(level >= 0, "level must be >= 0")

    grammar = Grammar(
        axiom=axiom, rules=rules, context_rules=context_rules, name=name
    )
    return GrammarConfig(grammar=grammar, seed=seed, level=level)


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise GrammarError(f"Invalid JSON in {path}: {e}") from e


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
GRAMMAR JSON SYNTAX

Top-level keys

  name: string (optional)
      A human-readable title.

  axiom: string or array of strings (required)
      The initial symbols. A string is split on whitespace, so "F X" is two
      tokens and "FX" is one.

  rules: object mapping key -> alternatives (optional)
      Each alternative is a whitespace-separated string or an array of tokens.
      A bare string value is a single alternative. With more than one
      alternative, one is chosen at random on every rewrite.

      A key may embed a context window: "<offset> <tok> <tok> ...". The offset
      is the 0-based position of the rewritten token inside the window, e.g.
      "1 a B c" rewrites B only when preceded by a and followed by c.
      Keys whose offset is not an integer or is out of range are ignored.

  context_rules: array (optional)
      Structured context rules:
        {"pattern": "a B c", "center": 1, "alternatives": ["B B"]}

  seed: integer (optional)
      Default random seed; --seed overrides it.

  level: integer >= 0 (default 0)
      Default level for "expand"; --level overrides it.

Example (stochastic algae):

    {
      "axiom": "A",
      "rules": {"A": ["A B", "B"], "B": "A"},
      "seed": 1,
      "level": 5
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lsystem_expander.py",
        description="Caching stochastic L-system expander.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pe = sub.add_parser("expand", help="Print the symbols at one expansion level.")
    pe.add_argument("config", help="Path to the grammar JSON config.")
    pe.add_argument("--level", type=int, default=None, help="Expansion level.")
    pe.add_argument("--seed", type=int, default=None, help="Random seed.")
    pe.add_argument(
        "--separator", default=" ", help="Printed between tokens (default: space)."
    )

    pl = sub.add_parser("levels", help="Print the length of every level up to N.")
    pl.add_argument("config", help="Path to the grammar JSON config.")
    pl.add_argument("--upto", type=int, default=None, help="Highest level.")
    pl.add_argument("--seed", type=int, default=None, help="Random seed.")

    pv = sub.add_parser(
        "validate", help="Validate a grammar config and print a brief summary."
    )
    pv.add_argument("config", help="Path to the grammar JSON config.")

    return p


# -------------------------
# Commands
# -------------------------


def _load_expander(config_path: str, seed: int | None) -> tuple[GrammarConfig, Expander]:
    cfg = parse_grammar(load_json(config_path))
    if seed is None:
        seed = cfg.seed
    return cfg, Expander(cfg.grammar, seed)


def cmd_expand(
    config_path: str, level: int | None, seed: int | None, separator: str
) -> None:
    cfg, expander = _load_expander(config_path, seed)
    symbols = expander.expansion_for_level(cfg.level if level is None else level)
    print(separator.join(symbols))


def cmd_levels(config_path: str, upto: int | None, seed: int | None) -> None:
    cfg, expander = _load_expander(config_path, seed)
    top = cfg.level if upto is None else upto
    # Highest level first: the lower ones come out of the cache.
    expander.expansion_for_level(top)
    for n in range(top + 1):
        print(f"{n}: {len(expander.expansion_for_level(n))}")
    print(f"seed: {expander.seed} draws: {expander.draws}")


_VALIDATE_SYMBOL_LIMIT = 10_000


def cmd_validate(config_path: str) -> None:
    cfg, expander = _load_expander(config_path, None)
    grammar = cfg.grammar

    print(f"name: {grammar.name}")
    print(f"axiom length: {len(grammar.axiom)}")
    print(f"rules: {len(grammar.rules)}")
    print(f"context rules: {len(expander.index.rules)}")
    print(f"mode: {expander.mode}")

    # Expand level by level until the default level, stopping once the
    # sequence grows past the limit.
    n = 0
    size = len(grammar.axiom)
    while n < cfg.level and size <= _VALIDATE_SYMBOL_LIMIT:
        n += 1
        size = len(expander.expansion_for_level(n))
    print(f"symbols at level {n}: {size}")
    if n < cfg.level:
        print(
            f"warning: level {n} already exceeds {_VALIDATE_SYMBOL_LIMIT} symbols; "
            f"level {cfg.level} was not expanded"
        )


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "expand":
            cmd_expand(args.config, args.level, args.seed, args.separator)
        elif args.cmd == "levels":
            cmd_levels(args.config, args.upto, args.seed)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        else:
            raise AssertionError("unreachable")
    except GrammarError as e:
        print(f"Grammar error: {e}", file=sys.stderr)
        return 2
    except InvalidArgumentError as e:
        print(f"Invalid argument: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
