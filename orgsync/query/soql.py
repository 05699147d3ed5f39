"""Lightweight query text splitting and composition."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

SELECT_PATTERN = re.compile(
    r"^\s*SELECT\s+(?P<fields>.+?)\s+FROM\s+(?P<object>\w+)(?P<rest>.*)$",
    re.IGNORECASE | re.DOTALL,
)
WHERE_PATTERN = re.compile(r"^\s*WHERE\s+", re.IGNORECASE)
TAIL_PATTERN = re.compile(r"\b(ORDER\s+BY|LIMIT|OFFSET|GROUP\s+BY|HAVING)\b", re.IGNORECASE)
LIMIT_PATTERN = re.compile(r"\b(ORDER\s+BY|LIMIT|OFFSET)\b", re.IGNORECASE)
IS_DELETED_PATTERN = re.compile(r"\bIsDeleted\s*=\s*(true|false)\b", re.IGNORECASE)


def _is_outside_quotes(text: str, position: int) -> bool:
    """True when the position is not inside a single-quoted literal."""
    quoted = False
    index = 0
    while index < position:
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == "'":
            quoted = not quoted
        index += 1
    return not quoted


def _find_outside_quotes(pattern: re.Pattern, text: str) -> Optional[re.Match]:
    for match in pattern.finditer(text):
        if _is_outside_quotes(text, match.start()):
            return match
    return None


def split_field_list(fields_text: str) -> List[str]:
    """Split a comma separated field list, keeping nested parentheses intact."""
    fields = []
    depth = 0
    current = []
    for char in fields_text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            fields.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if "".join(current).strip():
        fields.append("".join(current).strip())
    return [f for f in fields if f]


@dataclass
class ParsedQuery:
    """A query split into the parts the planner manipulates."""
    fields: List[str] = field(default_factory=list)
    object_name: str = ""
    where: str = ""
    suffix: str = ""

    @classmethod
    def parse(cls, query: str) -> "ParsedQuery":
        """Split a SELECT statement into fields, object, WHERE clause and tail."""
        match = SELECT_PATTERN.match(query or "")
        if not match:
            raise ValueError(f"Malformed query: {query}")

        rest = match.group("rest").strip()
        where = ""
        suffix = ""
        where_match = WHERE_PATTERN.match(rest)
        if where_match:
            rest = rest[where_match.end():]
            tail = _find_outside_quotes(TAIL_PATTERN, rest)
            if tail:
                where = rest[:tail.start()].strip()
                suffix = rest[tail.start():].strip()
            else:
                where = rest.strip()
        else:
            suffix = rest

        return cls(
            fields=split_field_list(match.group("fields")),
            object_name=match.group("object"),
            where=where,
            suffix=suffix,
        )

    @property
    def prefix(self) -> str:
        return f"SELECT {', '.join(self.fields)} FROM {self.object_name}"

    @property
    def has_limits(self) -> bool:
        return _find_outside_quotes(LIMIT_PATTERN, self.suffix) is not None

    def compose(self) -> str:
        """Join the parts back into a query string."""
        parts = [self.prefix]
        if self.where:
            parts.append(f"WHERE {self.where}")
        if self.suffix:
            parts.append(self.suffix)
        return " ".join(parts)

    def copy(self) -> "ParsedQuery":
        return ParsedQuery(list(self.fields), self.object_name, self.where, self.suffix)

    def remove_limits(self) -> None:
        """Strip ORDER BY/LIMIT/OFFSET while keeping GROUP BY and HAVING."""
        match = _find_outside_quotes(LIMIT_PATTERN, self.suffix)
        if match:
            self.suffix = self.suffix[:match.start()].strip()

    def remove_where(self) -> None:
        self.where = ""

    def remove_is_deleted(self) -> None:
        """Strip soft-delete predicates from the WHERE clause."""
        if not self.where:
            return
        where = IS_DELETED_PATTERN.sub("", self.where)
        where = re.sub(r"\(\s*\)", "", where)
        where = re.sub(r"\b(AND|OR)\s+(?=(AND|OR)\b)", "", where, flags=re.IGNORECASE)
        where = re.sub(r"\(\s*(AND|OR)\b", "(", where, flags=re.IGNORECASE)
        where = re.sub(r"\b(AND|OR)\s*\)", ")", where, flags=re.IGNORECASE)
        where = re.sub(r"^\s*(AND|OR)\b|\b(AND|OR)\s*$", "", where.strip(), flags=re.IGNORECASE)
        self.where = re.sub(r"\s+", " ", where).strip()

    def and_where(self, condition: str) -> None:
        """AND a condition with the existing WHERE clause."""
        if not condition:
            return
        if self.where:
            self.where = f"({self.where}) AND ({condition})"
        else:
            self.where = condition
