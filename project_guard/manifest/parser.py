"""
Manifest Parser
===============

Reads the OpenStep-style property list used by ``project.pbxproj`` into
plain Python values (dict, list, str, bytes), then into a typed Manifest.

Supported syntax:
    { key = value; ... }     dictionaries (insertion order kept)
    ( value, value, )        arrays
    "quoted \\" string"      strings with C-style escapes
    bare_word/path.ext       unquoted strings
    <0fbd 7a2c>              data
    /* ... */ and // ...     comments (discarded)
"""

import re
from typing import Any, Dict, List, Tuple

from ..errors import ManifestParseError

CONFLICT_MARKER = re.compile(r"^(<{7}|={7}|>{7})(\s|$)", re.MULTILINE)

_UNQUOTED = re.compile(r"[A-Za-z0-9_$+/:.\-]+")

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    '"': '"',
    "'": "'",
    "\\": "\\",
}

DuplicateKey = Tuple[Tuple[str, ...], str, int]


def find_conflict_markers(text: str) -> List[int]:
    """Return the 1-based line numbers of merge conflict markers."""
    return [text.count("\n", 0, m.start()) + 1 for m in CONFLICT_MARKER.finditer(text)]


class PlistParser:
    """
    Recursive-descent parser for OpenStep property lists.

    Duplicate dictionary keys keep their first value and are recorded in
    ``duplicates`` as (key path, key, line).
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.duplicates: List[DuplicateKey] = []

    @property
    def line(self) -> int:
        return self.text.count("\n", 0, self.pos) + 1

    def error(self, message: str) -> ManifestParseError:
        return ManifestParseError(message, line=self.line)

    # =========================================================================
    # Lexing
    # =========================================================================

    def _skip(self) -> None:
        text = self.text
        while self.pos < len(text):
            ch = text[self.pos]
            if ch.isspace():
                self.pos += 1
            elif text.startswith("//", self.pos):
                end = text.find("\n", self.pos)
                self.pos = len(text) if end == -1 else end + 1
            elif text.startswith("/*", self.pos):
                end = text.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("unterminated comment")
                self.pos = end + 2
            else:
                break

    def _peek(self) -> str:
        self._skip()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _expect(self, ch: str) -> None:
        if self._peek() != ch:
            found = self.text[self.pos] if self.pos < len(self.text) else "end of input"
            raise self.error(f"expected '{ch}', found '{found}'")
        self.pos += 1

    # =========================================================================
    # Grammar
    # =========================================================================

    def parse(self) -> Any:
        value = self.parse_value(())
        if self._peek():
            raise self.error("unexpected content after top-level value")
        return value

    def parse_value(self, key_path: Tuple[str, ...]) -> Any:
        ch = self._peek()
        if ch == "{":
            return self.parse_dict(key_path)
        if ch == "(":
            return self.parse_array(key_path)
        if ch == '"' or ch == "'":
            return self.parse_quoted()
        if ch == "<":
            return self.parse_data()
        if not ch:
            raise self.error("unexpected end of input")
        return self.parse_unquoted()

    def parse_dict(self, key_path: Tuple[str, ...]) -> Dict[str, Any]:
        self._expect("{")
        result: Dict[str, Any] = {}
        while self._peek() != "}":
            if not self._peek():
                raise self.error("unterminated dictionary")
            self._skip()
            key_pos = self.pos
            key = self.parse_value(key_path)
            if not isinstance(key, str):
                raise self.error("dictionary key must be a string")
            self._expect("=")
            value = self.parse_value(key_path + (key,))
            self._expect(";")
            if key in result:
                self.duplicates.append((key_path, key, self.text.count("\n", 0, key_pos) + 1))
            else:
                result[key] = value
        self.pos += 1
        return result

    def parse_array(self, key_path: Tuple[str, ...]) -> List[Any]:
        self._expect("(")
        result: List[Any] = []
        while self._peek() != ")":
            if not self._peek():
                raise self.error("unterminated array")
            result.append(self.parse_value(key_path))
            if self._peek() == ",":
                self.pos += 1
            elif self._peek() != ")":
                raise self.error("expected ',' or ')' in array")
        self.pos += 1
        return result

    def parse_quoted(self) -> str:
        quote = self.text[self.pos]
        self.pos += 1
        chunks: List[str] = []
        text = self.text
        while True:
            if self.pos >= len(text):
                raise self.error("unterminated string")
            ch = text[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(chunks)
            if ch == "\\":
                self.pos += 1
                if self.pos >= len(text):
                    raise self.error("unterminated escape")
                esc = text[self.pos]
                if esc == "U":
                    digits = text[self.pos + 1:self.pos + 5]
                    try:
                        chunks.append(chr(int(digits, 16)))
                    except ValueError:
                        raise self.error(f"invalid unicode escape '\\U{digits}'")
                    self.pos += 5
                    continue
                chunks.append(_ESCAPES.get(esc, esc))
                self.pos += 1
                continue
            chunks.append(ch)
            self.pos += 1

    def parse_data(self) -> bytes:
        end = self.text.find(">", self.pos)
        if end == -1:
            raise self.error("unterminated data")
        digits = re.sub(r"\s", "", self.text[self.pos + 1:end])
        try:
            value = bytes.fromhex(digits)
        except ValueError:
            raise self.error("invalid hex data")
        self.pos = end + 1
        return value

    def parse_unquoted(self) -> str:
        match = _UNQUOTED.match(self.text, self.pos)
        if not match:
            raise self.error(f"unexpected character '{self.text[self.pos]}'")
        self.pos = match.end()
        return match.group(0)


def parse_plist(text: str) -> Tuple[Any, List[DuplicateKey]]:
    """
    Parse property list text.

    Returns:
        The top-level value and the duplicate keys that were dropped

    Raises:
        ManifestParseError: If the text is not a well-formed property list
    """
    parser = PlistParser(text)
    return parser.parse(), parser.duplicates
