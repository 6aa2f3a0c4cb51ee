"""Human-transcribable certificate serial numbers.

Format: ``PREFIX-XXXX-XXXX-XXXX-C``

- 12 random Crockford base32 symbols (no I, L, O or U), grouped by four
- C is a Crockford mod-37 check symbol over the 12 symbols, so a single
  mistyped or transposed character is caught before any lookup
"""

import re
import secrets

from core.errors import ValidationError

ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
CHECK_ALPHABET = ALPHABET + "*~$=U"
BODY_LENGTH = 12
GROUP_SIZE = 4

_CONFUSABLES = str.maketrans({"O": "0", "I": "1", "L": "1"})
_PREFIX_PATTERN = re.compile(r"^[A-Z0-9]{1,10}$")


def check_symbol(body: str) -> str:
    value = 0
    for char in body:
        value = value * 32 + ALPHABET.index(char)
    return CHECK_ALPHABET[value % 37]


def _format(prefix: str, body: str, check: str) -> str:
    groups = [body[i : i + GROUP_SIZE] for i in range(0, BODY_LENGTH, GROUP_SIZE)]
    return "-".join([prefix, *groups, check])


def generate_serial_number(prefix: str) -> str:
    prefix = prefix.upper()
    if not _PREFIX_PATTERN.match(prefix):
        raise ValidationError(f"Invalid serial prefix {prefix!r}", field="prefix")

    body = "".join(secrets.choice(ALPHABET) for _ in range(BODY_LENGTH))
    return _format(prefix, body, check_symbol(body))


def normalize_serial_number(value: str) -> str:
    """Canonical form of a transcribed serial number.

    Uppercases, drops whitespace, maps the look-alikes O->0 and I/L->1 in
    the random part and restores the grouping. Does not check the checksum.

    Raises:
        ValidationError: If the value does not have the serial number shape.
    """
    cleaned = "".join(value.split()).upper()
    prefix, sep, rest = cleaned.partition("-")
    if not sep or not _PREFIX_PATTERN.match(prefix):
        raise ValidationError("Serial number must start with a prefix", field="serial")

    symbols = rest.replace("-", "").translate(_CONFUSABLES)
    if len(symbols) != BODY_LENGTH + 1:
        raise ValidationError(
            f"Serial number must have {BODY_LENGTH + 1} symbols after the prefix",
            field="serial",
        )

    body, check = symbols[:BODY_LENGTH], symbols[BODY_LENGTH]
    if any(char not in ALPHABET for char in body) or check not in CHECK_ALPHABET:
        raise ValidationError("Serial number contains invalid symbols", field="serial")

    return _format(prefix, body, check)


def is_valid_serial_number(value: str) -> bool:
    """True if ``value`` normalizes cleanly and its check symbol matches."""
    try:
        normalized = normalize_serial_number(value)
    except ValidationError:
        return False

    symbols = normalized.split("-", 1)[1].replace("-", "")
    return check_symbol(symbols[:BODY_LENGTH]) == symbols[BODY_LENGTH]
