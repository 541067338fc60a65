"""Parameter normalizer: inline text, ``@file`` or piped input → one structured value."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import IO, Any, Dict, Optional, Sequence, Union

import yaml

from toolport.errors import MalformedParameters, ParameterSourceUnavailable
from toolport.invocation.values import StructuredValue, ensure_structured

ParamSource = Union[None, str, Path, IO, Dict[str, Any], list]

YAML_SUFFIXES = (".yaml", ".yml")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


def _parse_json(text: str, origin: str) -> StructuredValue:
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError as exc:
        raise MalformedParameters(f"Could not parse {origin} as JSON: {exc}", source=origin)


def _parse_scalar(raw: str) -> StructuredValue:
    """``key=value`` values: JSON when it parses, otherwise the literal string."""
    try:
        return json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return raw


class ParameterNormalizer:
    """
    Turns a parameter source into a canonical ``StructuredValue``.

    Accepted sources:

    - ``None`` → ``{}``
    - a ``dict``/``list`` that is already structured
    - inline text: JSON, or ``key=value`` tokens
    - ``@path`` or a ``Path``: JSON file, or YAML for ``.yaml``/``.yml``
    - ``-`` / ``@-`` or a readable stream: JSON read from the stream

    No validation against a tool's input schema happens here.
    """

    def __init__(self, stdin: Optional[IO] = None):
        self._stdin = stdin

    @property
    def stdin(self) -> IO:
        return self._stdin if self._stdin is not None else sys.stdin

    def normalize(self, source: ParamSource) -> StructuredValue:
        if source is None:
            return {}
        if isinstance(source, (dict, list)):
            return self._checked(source, "parameters")
        if isinstance(source, Path):
            return self._from_file(source)
        if hasattr(source, "read"):
            return self._from_stream(source, "stream")
        if isinstance(source, str):
            return self._from_text(source)
        raise MalformedParameters(f"Unsupported parameter source: {type(source).__name__}")

    def from_cli_args(self, args: Sequence[str]) -> StructuredValue:
        """
        Normalize the trailing CLI arguments of ``call``/``session call``.

        No arguments reads piped stdin (``{}`` when stdin is a terminal).
        Several arguments must all be ``key=value`` tokens.
        """
        if not args:
            stream = self.stdin
            if hasattr(stream, "isatty") and stream.isatty():
                return {}
            return self._from_stream(stream, "stdin")
        if len(args) == 1:
            return self.normalize(args[0])
        return self._from_pairs(args)

    # ── Sources ───────────────────────────────────────────────────────────

    def _from_text(self, text: str) -> StructuredValue:
        if text in ("-", "@-"):
            return self._from_stream(self.stdin, "stdin")
        if text.startswith("@"):
            return self._from_file(Path(text[1:]).expanduser())
        stripped = text.strip()
        if not stripped:
            return {}
        if stripped[0] not in "{[\"" and "=" in stripped.split()[0]:
            return self._from_pairs(stripped.split())
        return self._checked(_parse_json(stripped, "inline parameters"), "inline parameters")

    def _from_file(self, path: Path) -> StructuredValue:
        try:
            text = path.read_text()
        except OSError as exc:
            raise ParameterSourceUnavailable(
                f"Cannot read parameter file {path}: {exc.strerror or exc}", path=str(path)
            )
        if not text.strip():
            return {}
        if path.suffix.lower() in YAML_SUFFIXES:
            try:
                data = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise MalformedParameters(f"Could not parse {path} as YAML: {exc}", path=str(path))
            return self._checked(data if data is not None else {}, str(path))
        return self._checked(_parse_json(text, str(path)), str(path))

    def _from_stream(self, stream: IO, origin: str) -> StructuredValue:
        try:
            text = stream.read()
        except (OSError, ValueError) as exc:
            raise ParameterSourceUnavailable(f"Cannot read parameters from {origin}: {exc}")
        if isinstance(text, bytes):
            try:
                text = text.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedParameters(f"Parameters on {origin} are not UTF-8: {exc}")
        if not text.strip():
            return {}
        return self._checked(_parse_json(text, origin), origin)

    def _from_pairs(self, tokens: Sequence[str]) -> Dict[str, StructuredValue]:
        params: Dict[str, StructuredValue] = {}
        for token in tokens:
            key, sep, raw = token.partition("=")
            if not sep or not key:
                raise MalformedParameters(
                    f"Expected key=value, got {token!r}", source="inline parameters"
                )
            params[key] = _parse_scalar(raw)
        return params

    @staticmethod
    def _checked(value: Any, origin: str) -> StructuredValue:
        try:
            return ensure_structured(value)
        except ValueError as exc:
            raise MalformedParameters(f"Parameters from {origin} are not structured data: {exc}")
