"""Parse and serialize a simplified subset of CSS.

The grammar has four layers, each a class with a ``parse`` classmethod and a
``to_text`` method::

    Stylesheet      rule*
    Rule            selector "{" declaration-list "}"
    DeclarationList (";"* declaration)*
    Declaration     ident ":" value ["!" "important"] [";"]

``parse`` returns the parsed value together with the unconsumed remainder of
the input, so the layers compose. ``Stylesheet.parse`` is the entry point and
returns only the stylesheet.

Comments, at-rules, nested blocks, strings and escapes are not supported.
Selectors and values are kept as opaque, trimmed text.
"""
import codecs
import io
import logging
import string
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union, cast

logger = logging.getLogger(__name__)

WHITESPACE = string.whitespace

# A declaration value runs up to one of these
VALUE_TERMINATORS = ";{}"

IMPORTANT = "important"

BOMS = (
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
)


# region errors
class ParseError(Exception):
    def __init__(self, message: str, position: int = 0) -> None:
        self.position = position
        super().__init__(message)


class MalformedDeclaration(ParseError):
    pass


class UnterminatedSelector(ParseError):
    pass


class UnterminatedBlock(ParseError):
    pass


class MalformedStylesheet(ParseError):
    pass


# endregion


# region decoding
def peek_buffered(buffer: Union[io.BufferedReader, io.BufferedIOBase], size: int):
    if not isinstance(buffer, io.BufferedReader):
        assert buffer.seekable(), "Need a seekable buffer"

        peek = buffer.read(size)
        # Rewind
        buffer.seek(-len(peek), io.SEEK_CUR)
    else:
        peek = buffer.peek(size)

    return peek


def detect_bom(
    buffer: Union[io.BufferedReader, io.BufferedIOBase]
) -> Optional[codecs.CodecInfo]:
    sample = peek_buffered(buffer, 3)

    for bom, encoding in BOMS:
        if sample.startswith(bom):
            buffer.read(len(bom))  # Skip the BOM
            return codecs.lookup(encoding)

    return None


def lookup_encoding(encoding: Optional[str], kind: str) -> Optional[codecs.CodecInfo]:
    if not encoding:
        return None

    try:
        return codecs.lookup(encoding)
    except LookupError:
        warnings.warn(f"Ignored {kind} encoding, invalid encoding: {encoding}.", stacklevel=3)
        return None


def decode(
    stream: Union[io.RawIOBase, io.BufferedIOBase, io.TextIOBase, IO],
    protocol_encoding: Optional[str] = None,
    environment_encoding: Optional[str] = None,
) -> io.TextIOBase:
    """Decodes a stream
    If the stream is a TextIOBase, it is assumed to be decoded, and returned unchanged.

    For byte streams the encoding is picked in the following order:
    1. BOM marker
    2. Protocol encoding
    3. Environment encoding
    4. Assume UTF-8
    """
    if isinstance(stream, io.TextIOBase):
        return stream

    buffered: Union[io.BufferedReader, io.BufferedIOBase]
    if isinstance(stream, io.RawIOBase):
        buffered = io.BufferedReader(stream)
    elif isinstance(stream, io.BufferedIOBase):
        buffered = stream
    else:
        raise ValueError(f"Unexpected stream: {stream!r}")

    codec_info = (
        detect_bom(buffered)
        or lookup_encoding(protocol_encoding, "protocol")
        or lookup_encoding(environment_encoding, "environment")
        or codecs.lookup("utf-8")
    )

    # Undecodable bytes become U+FFFD, line endings are normalized to \n
    return io.TextIOWrapper(
        cast(BinaryIO, buffered), encoding=codec_info.name, errors="replace"
    )


# endregion


# region scanner
class Scanner:
    """Cursor over the input text of a single parse call."""

    def __init__(self, content: str) -> None:
        self.content = content
        self.pos = 0

    @contextmanager
    def memo(self):
        pos = self.pos
        try:
            yield
        finally:
            self.pos = pos

    def peek(self, n: int = 1) -> str:
        # Returns the next N characters without modifying the position
        return self.content[self.pos : self.pos + n]

    def advance(self, n: int) -> int:
        self.pos += n
        return self.pos

    def consume(self, n: int) -> str:
        # Returns the next N characters and increases the position
        start = self.pos
        end = self.advance(n)
        return self.content[start:end]

    @property
    def eof(self) -> bool:
        return self.pos >= len(self.content)

    @property
    def remainder(self) -> str:
        return self.content[self.pos :]

    @classmethod
    def is_whitespace(cls, c: str) -> bool:
        assert len(c) == 1
        return c in WHITESPACE

    @classmethod
    def is_name_start(cls, c: str) -> bool:
        assert len(c) == 1
        return c.isalpha() or c in "_-" or ord(c) > 127

    @classmethod
    def is_name_char(cls, c: str) -> bool:
        if c == "":
            return False
        assert len(c) == 1
        return cls.is_name_start(c) or c in string.digits

    def skip_whitespace(self) -> None:
        while not self.eof and self.is_whitespace(self.peek(1)):
            self.advance(1)

    def skip_separators(self) -> None:
        # Whitespace and stray `;`
        while not self.eof and (self.is_whitespace(self.peek(1)) or self.peek(1) == ";"):
            self.advance(1)

    def consume_ident(self) -> str:
        if self.eof or not self.is_name_start(self.peek(1)):
            return ""

        start = self.pos
        self.advance(1)
        while self.is_name_char(self.peek(1)):
            self.advance(1)

        return self.content[start : self.pos]

    def at_value_end(self) -> bool:
        return self.eof or self.peek(1) in VALUE_TERMINATORS

    def important_length(self) -> int:
        """Length of an `!important` marker at the current position, or 0.

        The marker is `!`, optional whitespace, the keyword, then optional
        whitespace up to the end of the value. A `!` anywhere else belongs to
        the value.
        """
        assert self.peek(1) == "!"

        with self.memo():
            start = self.pos
            self.advance(1)
            self.skip_whitespace()
            if self.peek(len(IMPORTANT)).lower() != IMPORTANT:
                return 0
            self.advance(len(IMPORTANT))
            self.skip_whitespace()
            if not self.at_value_end():
                return 0
            return self.pos - start

    def consume_value(self) -> Tuple[str, bool]:
        start = self.pos

        while not self.at_value_end():
            if self.peek(1) == "!":
                marker = self.important_length()
                if marker:
                    value = self.content[start : self.pos]
                    self.advance(marker)
                    return value.strip(WHITESPACE), True
            self.advance(1)

        return self.content[start : self.pos].strip(WHITESPACE), False


def describe(scanner: Scanner) -> str:
    return "end of input" if scanner.eof else repr(scanner.peek(1))


# endregion


# region model
@dataclass(frozen=True)
class Declaration:
    name: str
    value: str
    important: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Declaration name must not be empty.")

    @classmethod
    def new(cls, name: str, value: str, important: bool = False) -> "Declaration":
        return cls(name, value, important)

    @classmethod
    def parse(cls, text: str) -> Tuple["Declaration", str]:
        """Parses `name: value [!important] [;]` from the start of `text`.

        Returns the declaration and the remainder of `text`. Raises
        MalformedDeclaration when there is no property name, no colon, or an
        empty value.
        """
        scanner = Scanner(text)
        declaration = cls.consume(scanner)
        return declaration, scanner.remainder

    @classmethod
    def from_string(cls, text: str) -> "Declaration":
        return cls.parse(text)[0]

    @classmethod
    def consume(cls, scanner: Scanner) -> "Declaration":
        scanner.skip_whitespace()

        name = scanner.consume_ident()
        if not name:
            raise MalformedDeclaration(
                f"Expected a property name, got {describe(scanner)}.", scanner.pos
            )

        scanner.skip_whitespace()
        if scanner.peek(1) != ":":
            raise MalformedDeclaration(
                f"Expected a colon after {name!r}, got {describe(scanner)}.",
                scanner.pos,
            )
        scanner.advance(1)
        scanner.skip_whitespace()

        start = scanner.pos
        value, important = scanner.consume_value()
        if not value:
            raise MalformedDeclaration(f"Expected a value for {name!r}.", start)

        if scanner.peek(1) == ";":
            scanner.advance(1)

        return cls(name, value, important)

    def to_text(self) -> str:
        if self.important:
            return f"{self.name}: {self.value} !important;"
        return f"{self.name}: {self.value};"

    def __str__(self) -> str:
        return self.to_text()


@dataclass
class DeclarationList:
    """Declarations of a block, in source order.

    Duplicate names are kept as they are. `remove` is the only mutation.
    """

    declarations: List[Declaration] = field(default_factory=list)

    @classmethod
    def new(cls, declarations: Optional[Iterable[Declaration]] = None) -> "DeclarationList":
        return cls(list(declarations or []))

    @classmethod
    def parse(cls, text: str) -> Tuple["DeclarationList", str]:
        """Parses as many declarations as possible, never raises.

        The remainder starts right after the last parsed declaration, so it is
        `text` itself when nothing matched.
        """
        scanner = Scanner(text)
        declarations = cls.consume(scanner)
        return declarations, scanner.remainder

    @classmethod
    def from_string(cls, text: str) -> "DeclarationList":
        return cls.parse(text)[0]

    @classmethod
    def consume(cls, scanner: Scanner) -> "DeclarationList":
        declarations: List[Declaration] = []

        while True:
            end = scanner.pos
            scanner.skip_separators()
            try:
                declaration = Declaration.consume(scanner)
            except MalformedDeclaration as e:
                logger.debug("Declaration list ends at %d: %s", end, e)
                scanner.pos = end
                break

            if scanner.pos <= end:
                # No progress
                scanner.pos = end
                break

            declarations.append(declaration)

        return cls(declarations)

    def remove(self, name: str) -> None:
        """Removes every declaration named exactly `name`."""
        self.declarations[:] = [d for d in self.declarations if d.name != name]

    def copy(self) -> "DeclarationList":
        return type(self)(list(self.declarations))

    def to_text(self) -> str:
        return " ".join(declaration.to_text() for declaration in self.declarations)

    def __str__(self) -> str:
        return self.to_text()

    def __len__(self) -> int:
        return len(self.declarations)

    def __iter__(self) -> Iterator[Declaration]:
        return iter(self.declarations)

    def __getitem__(self, index: int) -> Declaration:
        return self.declarations[index]


@dataclass(frozen=True)
class Rule:
    selector: str
    declarations: DeclarationList = field(default_factory=DeclarationList)

    @classmethod
    def new(
        cls, selector: str, declarations: Optional[Iterable[Declaration]] = None
    ) -> "Rule":
        # The rule gets its own copy of the declarations
        return cls(selector, DeclarationList.new(declarations))

    @classmethod
    def parse(cls, text: str) -> Tuple["Rule", str]:
        scanner = Scanner(text)
        rule = cls.consume(scanner)
        return rule, scanner.remainder

    @classmethod
    def from_string(cls, text: str) -> "Rule":
        return cls.parse(text)[0]

    @classmethod
    def consume(cls, scanner: Scanner) -> "Rule":
        start = scanner.pos

        # The selector is everything up to the first `{`
        brace = scanner.content.find("{", start)
        if brace == -1:
            raise UnterminatedSelector("Expected `{` after the selector.", start)
        selector = scanner.consume(brace - start).strip(WHITESPACE)
        scanner.advance(1)

        scanner.skip_whitespace()
        declarations = DeclarationList.consume(scanner)
        scanner.skip_separators()

        if scanner.peek(1) != "}":
            raise UnterminatedBlock(
                f"Expected `}}` to close the block of {selector!r}, got {describe(scanner)}.",
                scanner.pos,
            )
        scanner.advance(1)

        logger.debug("Parsed rule %r with %d declarations", selector, len(declarations))
        return cls(selector, declarations)

    def to_text(self) -> str:
        return f"{self.selector} {{ {self.declarations.to_text()} }}"

    def __str__(self) -> str:
        return self.to_text()


@dataclass(frozen=True)
class Stylesheet:
    rules: List[Rule] = field(default_factory=list)

    @classmethod
    def new(cls, rules: Optional[Iterable[Rule]] = None) -> "Stylesheet":
        # Each rule gets its own copy of the declarations
        return cls([Rule(rule.selector, rule.declarations.copy()) for rule in rules or []])

    @classmethod
    def parse(cls, text: str, strict: bool = False) -> "Stylesheet":
        """Parses consecutive rules until only whitespace is left.

        When a rule fails to parse, the rest of the text is ignored with a
        warning. With `strict`, MalformedStylesheet is raised instead.
        """
        scanner = Scanner(text)
        rules: List[Rule] = []

        while True:
            scanner.skip_whitespace()
            if scanner.eof:
                break

            start = scanner.pos
            try:
                rules.append(Rule.consume(scanner))
            except ParseError as e:
                if strict:
                    raise MalformedStylesheet(
                        f"Invalid rule at position {start}: {e}", start
                    ) from e
                warnings.warn(
                    f"Ignored {len(text) - start} trailing characters at position {start}: {e}",
                    stacklevel=2,
                )
                break

        logger.debug("Parsed stylesheet with %d rules", len(rules))
        return cls(rules)

    @classmethod
    def from_reader(
        cls,
        stream: Union[io.RawIOBase, io.BufferedIOBase, io.TextIOBase, IO],
        strict: bool = False,
        protocol_encoding: Optional[str] = None,
        environment_encoding: Optional[str] = None,
    ) -> "Stylesheet":
        reader = decode(
            stream,
            protocol_encoding=protocol_encoding,
            environment_encoding=environment_encoding,
        )
        try:
            text = reader.read()
        finally:
            if reader is not stream:
                # Leave the caller's stream open
                buffered = reader.detach()
                if buffered is not stream:
                    buffered.detach()
        return cls.parse(text, strict=strict)

    def to_text(self) -> str:
        return " ".join(rule.to_text() for rule in self.rules)

    def __str__(self) -> str:
        return self.to_text()


# endregion
