"""In-process utility skills.

Each handler takes the bound parameters (defaults already applied) and returns
the text shown to the reasoning backend. Invalid input raises ``ValueError``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
import secrets
from collections.abc import Callable, Mapping
from pathlib import Path

UtilityHandler = Callable[[Mapping[str, str]], str]

HASH_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
CASE_TYPES = ("upper", "lower", "title", "sentence", "toggle")

_LOWERCASE = "abcdefghjkmnpqrstuvwxyz"
_UPPERCASE = "ABCDEFGHJKMNPQRSTUVWXYZ"
_DIGITS = "23456789"
_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
_MAX_PASSWORD_LENGTH = 128


def _flag(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def password_strength(password: str) -> str:
    score = sum(
        (
            len(password) >= 8,
            len(password) >= 12,
            len(password) >= 16,
            bool(re.search(r"[a-z]", password)),
            bool(re.search(r"[A-Z]", password)),
            bool(re.search(r"[0-9]", password)),
            bool(re.search(r"[^a-zA-Z0-9]", password)),
        )
    )
    if score <= 2:
        return "weak"
    if score <= 4:
        return "moderate"
    if score <= 5:
        return "strong"
    return "very strong"


def generate_password(params: Mapping[str, str]) -> str:
    length = int(float(params.get("length", "16")))
    if not 1 <= length <= _MAX_PASSWORD_LENGTH:
        msg = f"Password length must be between 1 and {_MAX_PASSWORD_LENGTH}"
        raise ValueError(msg)
    alphabet = _LOWERCASE + _UPPERCASE
    if _flag(params.get("includeNumbers"), True):
        alphabet += _DIGITS
    if _flag(params.get("includeSymbols"), True):
        alphabet += _SYMBOLS
    password = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{password}\nGenerated {length}-character password ({password_strength(password)} strength)"


def file_hash(params: Mapping[str, str]) -> str:
    algorithm = params.get("algorithm", "sha256").lower()
    if algorithm not in HASH_ALGORITHMS:
        msg = f"Invalid algorithm. Use: {', '.join(HASH_ALGORITHMS)}"
        raise ValueError(msg)
    path = Path(params["filePath"]).expanduser()
    if path.exists() and not path.is_file():
        msg = f"Not a regular file: {path}"
        raise ValueError(msg)
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return f"{algorithm.upper()} of {path.name}: {digest.hexdigest()}"


def format_json(params: Mapping[str, str]) -> str:
    try:
        parsed = json.loads(params["jsonString"])
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON: {exc}"
        raise ValueError(msg) from exc
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def text_stats(params: Mapping[str, str]) -> str:
    text = params["text"]
    no_spaces = re.sub(r"\s", "", text)
    lines = text.split("\n")
    sentences = [part for part in re.split(r"[.!?]+", text) if part.strip()]
    paragraphs = [part for part in re.split(r"\n\s*\n", text) if part.strip()]
    return "\n".join(
        [
            f"characters: {len(text)}",
            f"characters_no_spaces: {len(no_spaces)}",
            f"words: {len(text.split())}",
            f"lines: {len(lines)}",
            f"sentences: {len(sentences)}",
            f"paragraphs: {len(paragraphs)}",
        ]
    )


def convert_case(params: Mapping[str, str]) -> str:
    text = params["text"]
    case_type = params["caseType"].strip().lower()
    if case_type == "upper":
        return text.upper()
    if case_type == "lower":
        return text.lower()
    if case_type == "title":
        return re.sub(r"\w\S*", lambda match: match.group(0).capitalize(), text)
    if case_type == "sentence":
        return re.sub(
            r"(^\s*\w|[.!?]\s*\w)", lambda match: match.group(0).upper(), text.lower()
        )
    if case_type == "toggle":
        return text.swapcase()
    msg = f"Invalid case type. Use: {', '.join(CASE_TYPES)}"
    raise ValueError(msg)


def remove_duplicate_lines(params: Mapping[str, str]) -> str:
    lines = params["text"].split("\n")
    unique = list(dict.fromkeys(lines))
    return "\n".join(unique)


def base64_encode(params: Mapping[str, str]) -> str:
    return base64.b64encode(params["text"].encode("utf-8")).decode("ascii")


def base64_decode(params: Mapping[str, str]) -> str:
    try:
        return base64.b64decode(params["encoded"], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        msg = f"Invalid Base64 input: {exc}"
        raise ValueError(msg) from exc


UTILITY_HANDLERS: dict[str, UtilityHandler] = {
    "generate-password": generate_password,
    "file-hash": file_hash,
    "format-json": format_json,
    "text-stats": text_stats,
    "convert-case": convert_case,
    "remove-duplicate-lines": remove_duplicate_lines,
    "base64-encode": base64_encode,
    "base64-decode": base64_decode,
}
