"""Target platform matching for `[target.'cfg(...)'.dependencies]` edges."""

import logging
import re
from typing import Iterable, List, Optional, Set, Tuple

from .version_parser import ParseError

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'\s*(?:(?P<ident>[A-Za-z_][A-Za-z0-9_]*)|(?P<string>"[^"]*")|(?P<punct>[(),=]))')


def _tokenize(text: str) -> List[str]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match:
            raise ParseError(f"invalid cfg expression `{text}`")
        tokens.append(match.group(match.lastgroup))
        pos = match.end()
    return tokens


class CfgExpr:
    """Parsed `cfg(...)` predicate: all/any/not combinators over names and key="value" pairs."""

    def __init__(self, op: str, args: Tuple = ()):
        self.op = op  # "all", "any", "not", "name", "pair"
        self.args = args

    @classmethod
    def parse(cls, text: str) -> "CfgExpr":
        """
        Parse a cargo platform expression such as `cfg(all(unix, target_os = "linux"))`.

        Raises:
            ParseError: if the expression is malformed
        """
        tokens = _tokenize(text)
        if tokens[:2] != ["cfg", "("] or tokens[-1:] != [")"]:
            raise ParseError(f"not a cfg expression `{text}`")
        expr, pos = cls._parse_expr(tokens, 2, text)
        if pos != len(tokens) - 1:
            raise ParseError(f"trailing tokens in cfg expression `{text}`")
        return expr

    @classmethod
    def _parse_expr(cls, tokens: List[str], pos: int, text: str) -> Tuple["CfgExpr", int]:
        if pos >= len(tokens):
            raise ParseError(f"unexpected end of cfg expression `{text}`")
        token = tokens[pos]

        if token in ("all", "any", "not") and pos + 1 < len(tokens) and tokens[pos + 1] == "(":
            pos += 2
            args = []
            while pos < len(tokens) and tokens[pos] != ")":
                arg, pos = cls._parse_expr(tokens, pos, text)
                args.append(arg)
                if pos >= len(tokens):
                    break
                if tokens[pos] == ",":
                    pos += 1
                elif tokens[pos] != ")":
                    raise ParseError(f"expected `,` or `)` in cfg expression `{text}`")
            if pos >= len(tokens):
                raise ParseError(f"unbalanced cfg expression `{text}`")
            if token == "not" and len(args) != 1:
                raise ParseError(f"not() takes exactly one predicate in `{text}`")
            return cls(token, tuple(args)), pos + 1

        if not re.match(r'^[A-Za-z_]', token):
            raise ParseError(f"unexpected `{token}` in cfg expression `{text}`")

        if pos + 2 < len(tokens) and tokens[pos + 1] == "=":
            value = tokens[pos + 2]
            if not value.startswith('"'):
                raise ParseError(f"cfg value must be a string in `{text}`")
            return cls("pair", (token, value.strip('"'))), pos + 3
        return cls("name", (token,)), pos + 1

    def evaluate(self, names: Set[str], pairs: Set[Tuple[str, str]]) -> bool:
        if self.op == "all":
            return all(arg.evaluate(names, pairs) for arg in self.args)
        if self.op == "any":
            return any(arg.evaluate(names, pairs) for arg in self.args)
        if self.op == "not":
            return not self.args[0].evaluate(names, pairs)
        if self.op == "pair":
            return tuple(self.args) in pairs
        return self.args[0] in names


class Platform:
    """The compilation target an edge filter is evaluated against."""

    def __init__(self, triple: Optional[str] = None, cfgs: Iterable[str] = ()):
        self.triple = triple
        self.names: Set[str] = set()
        self.pairs: Set[Tuple[str, str]] = set()
        for line in cfgs:
            line = line.strip()
            if not line:
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                self.pairs.add((key.strip(), value.strip().strip('"')))
            else:
                self.names.add(line)

    @classmethod
    def from_rustc_cfg(cls, triple: Optional[str], output: str) -> "Platform":
        """Build a platform from `rustc --print=cfg` output."""
        return cls(triple, output.splitlines())

    def matches(self, expression: Optional[str]) -> bool:
        """Whether a dependency's platform expression applies to this target."""
        if not expression:
            return True
        expression = expression.strip()
        if expression.startswith("cfg("):
            return CfgExpr.parse(expression).evaluate(self.names, self.pairs)
        return expression == self.triple

    def __repr__(self) -> str:
        return f"Platform({self.triple!r})"
