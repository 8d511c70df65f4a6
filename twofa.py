#!/usr/bin/env python3
"""
2fa - A two-factor authentication agent
Usage:
    2fa --add [-7 | -8] [--hotp] <name>
    2fa --add --uri <otpauth-uri> <name>
    2fa --list
    2fa [--clip] [-v] <name>
    2fa

Keys live unencrypted in a flat text file, one per line:

    <name> <digits> <base32 secret> [<20-digit counter>]

Lines with a counter are HOTP (counter-based) keys, the rest are TOTP keys.
"""

import argparse
import base64
import hashlib
import hmac
import logging
import os
import struct
import sys
import time
from dataclasses import dataclass
from getpass import getpass
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pyperclip

log = logging.getLogger("2fa")

COUNTER_LEN = 20
COUNTER_MAX = 2**64 - 1
TOTP_PERIOD = 30
DIGIT_CHOICES = (6, 7, 8)
KEYCHAIN_MODE = 0o600


class KeychainError(RuntimeError):
    """Fatal error for a keychain operation."""


# ==================== OTP Implementation ====================

def hotp(secret: bytes, counter: int, digits: int = 6) -> int:
    """Generate HOTP code (RFC 4226)"""
    # Counter as 8-byte big-endian
    counter_bytes = struct.pack(">Q", counter)

    hmac_hash = hmac.new(secret, counter_bytes, hashlib.sha1).digest()

    # Dynamic truncation
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack(">I", hmac_hash[offset:offset + 4])[0] & 0x7FFFFFFF

    # A 31-bit value has no more than 8 useful digits
    return truncated % (10 ** max(0, min(digits, 8)))


def totp(secret: bytes, now: float, digits: int = 6) -> int:
    """Generate TOTP code (RFC 6238) for Unix time `now`"""
    return hotp(secret, int(now // TOTP_PERIOD), digits)


def format_code(code: int, digits: int) -> str:
    """Render a code as zero-padded decimal text"""
    return str(code).zfill(digits)


def get_time_remaining(now: float | None = None) -> int:
    """Get seconds remaining until next TOTP rotation"""
    if now is None:
        now = time.time()
    return TOTP_PERIOD - (int(now) % TOTP_PERIOD)


def normalize_key(text: str) -> str:
    """Strip whitespace and pad a typed key to a multiple of 8 characters"""
    text = "".join(text.split())
    return text + "=" * (-len(text) % 8)


def decode_key(text: str) -> bytes:
    """Decode a base32 key, case-insensitive. Raises ValueError."""
    # binascii.Error is a ValueError
    return base64.b32decode(text.upper())


# ==================== Keychain ====================

@dataclass(frozen=True, slots=True)
class TimeBased:
    pass


@dataclass(frozen=True, slots=True)
class CounterBased:
    # Absolute byte offset of the counter field in the keychain file
    offset: int


@dataclass(frozen=True, slots=True)
class Key:
    name: str
    digits: int
    raw: bytes
    mode: TimeBased | CounterBased

    @property
    def counter_based(self) -> bool:
        return isinstance(self.mode, CounterBased)


@dataclass(slots=True)
class AddParams:
    digits: int = 6
    counter_based: bool = False
    counter: int = 0


def get_keychain_path() -> Path:
    """Get the path to the keychain file"""
    default = os.path.join(os.path.expanduser("~"), ".2fa")
    return Path(os.environ.get("TWOFA_KEYCHAIN", default))


def private_opener(path, flags):
    """Open a file, creating it with owner-only permissions"""
    return os.open(path, flags, KEYCHAIN_MODE)


def check_name(name: str) -> None:
    """Reject names that cannot be stored as the first field of a record"""
    if not name:
        raise KeychainError("name must not be empty")
    if any(c.isspace() for c in name):
        raise KeychainError("name must not contain spaces")


def parse_counter(field: bytes) -> int | None:
    """Parse a 20-digit counter field, or return None if malformed"""
    if len(field) != COUNTER_LEN or not field.isdigit():
        return None
    value = int(field)
    if value > COUNTER_MAX:
        return None
    return value


def parse_line(line: bytes, start: int) -> Key | None:
    """Parse one record line (without its newline) starting at byte `start`"""
    fields = line.split(b" ")
    if len(fields) not in (3, 4):
        return None

    name = os.fsdecode(fields[0])
    if not name or any(c.isspace() for c in name):
        return None

    digits = fields[1]
    if len(digits) != 1 or digits not in b"678":
        return None

    secret = fields[2]
    if len(fields) == 3:
        # Tolerate CRLF line endings on time-based keys
        secret = secret.removesuffix(b"\r")
    try:
        raw = decode_key(secret.decode("ascii"))
    except ValueError:
        return None

    if len(fields) == 3:
        return Key(name, int(digits), raw, TimeBased())

    if parse_counter(fields[3]) is None:
        return None
    return Key(name, int(digits), raw, CounterBased(start + len(line) - COUNTER_LEN))


class Keychain:
    """Named two-factor keys backed by a flat text file."""

    def __init__(self, path, data: bytes = b"", keys: dict[str, Key] | None = None):
        self.path = Path(path)
        self.data = data
        self.keys = keys if keys is not None else {}

    @classmethod
    def load(cls, path) -> "Keychain":
        """Read a keychain file. A missing file is an empty keychain."""
        path = Path(path)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            log.debug("no keychain at %s", path)
            return cls(path)
        except OSError as e:
            raise KeychainError(f"reading keychain: {e}") from e

        keys = {}
        start = 0
        for lineno, line in enumerate(data.split(b"\n"), 1):
            line_start = start
            start += len(line) + 1
            if not line.strip():
                continue

            key = parse_line(line, line_start)
            if key is None:
                log.warning("%s:%d: malformed key", path, lineno)
                continue
            if key.name in keys:
                log.debug("%s:%d: %r replaces an earlier key", path, lineno, key.name)
            keys[key.name] = key

        log.debug("loaded %d keys from %s", len(keys), path)
        return cls(path, data, keys)

    def get(self, name: str) -> Key | None:
        """Look up a key by name"""
        return self.keys.get(name)

    def names(self) -> list[str]:
        """List key names, sorted"""
        return sorted(self.keys)

    def add(self, name: str, text: str, params: AddParams | None = None) -> str:
        """Append a new key to the keychain file and return the written line.

        The in-memory index is not updated. Nothing is written if the name,
        digit count or key text is invalid.
        """
        if params is None:
            params = AddParams()
        check_name(name)
        if params.digits not in DIGIT_CHOICES:
            raise KeychainError(f"invalid digit count {params.digits}")
        if not 0 <= params.counter <= COUNTER_MAX:
            raise KeychainError(f"invalid counter {params.counter}")

        text = normalize_key(text)
        try:
            decode_key(text)
        except ValueError as e:
            raise KeychainError(f"invalid key: {e}") from e

        line = f"{name} {params.digits} {text}"
        if params.counter_based:
            line += " " + str(params.counter).zfill(COUNTER_LEN)
        line += "\n"

        try:
            with open(self.path, "a+b", opener=private_opener) as f:
                # Keep a hand-edited file without a final newline intact
                if f.seek(0, os.SEEK_END) > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        line = "\n" + line
                os.chmod(self.path, KEYCHAIN_MODE)
                f.write(os.fsencode(line))
        except OSError as e:
            raise KeychainError(f"adding key: {e}") from e

        log.debug("added %r to %s", name, self.path)
        return line.lstrip("\n")

    def code(self, name: str, now: float | None = None) -> str:
        """Return the current code for a key.

        Counter-based keys are advanced on disk before the code is returned.
        """
        key = self.keys.get(name)
        if key is None:
            raise KeychainError(f"no such key {name!r}")

        if isinstance(key.mode, TimeBased):
            if now is None:
                now = time.time()
            return format_code(totp(key.raw, now, key.digits), key.digits)

        offset = key.mode.offset
        field = self.data[offset:offset + COUNTER_LEN]
        counter = parse_counter(field)
        if counter is None or counter == COUNTER_MAX:
            raise KeychainError(f"malformed key counter for {name!r} ({field!r})")
        counter += 1
        code = hotp(key.raw, counter, key.digits)

        self._write_counter(offset, counter)
        log.debug("advanced counter for %r to %d", name, counter)
        return format_code(code, key.digits)

    def _write_counter(self, offset: int, counter: int) -> None:
        """Overwrite the counter field at `offset` in place and sync it to disk"""
        field = str(counter).zfill(COUNTER_LEN).encode("ascii")
        try:
            with open(self.path, "r+b") as f:
                f.seek(offset)
                f.write(field)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise KeychainError(f"updating keychain: {e}") from e
        self.data = self.data[:offset] + field + self.data[offset + COUNTER_LEN:]

    def show_all(self, now: float | None = None) -> list[tuple[str, str]]:
        """Codes for every key, sorted by name.

        Counter-based keys show dashes instead of spending a counter value.
        """
        width = max((k.digits for k in self.keys.values()), default=0)
        rows = []
        for name in self.names():
            key = self.keys[name]
            if key.counter_based:
                code = "-" * key.digits
            else:
                code = self.code(name, now)
            rows.append((code.ljust(width), name))
        return rows


# ==================== otpauth URIs ====================

def parse_otpauth_uri(uri: str) -> tuple[str, AddParams]:
    """Parse an otpauth://totp/ or otpauth://hotp/ URI into a key and parameters"""
    parsed = urlparse(uri)
    if parsed.scheme != "otpauth" or parsed.netloc not in ("totp", "hotp"):
        raise KeychainError("expected an otpauth://totp/ or otpauth://hotp/ URI")

    params = parse_qs(parsed.query)

    secret = params.get("secret", [""])[0]
    if not secret:
        raise KeychainError("otpauth URI has no secret")

    algorithm = params.get("algorithm", ["SHA1"])[0]
    if algorithm.upper() != "SHA1":
        raise KeychainError(f"unsupported algorithm {algorithm}")

    try:
        digits = int(params.get("digits", [6])[0])
        period = int(params.get("period", [TOTP_PERIOD])[0])
        counter = int(params.get("counter", [0])[0])
    except ValueError as e:
        raise KeychainError(f"malformed otpauth URI: {e}") from e

    if digits not in DIGIT_CHOICES:
        raise KeychainError(f"unsupported digit count {digits}")
    if period != TOTP_PERIOD:
        raise KeychainError(f"unsupported period {period}")

    counter_based = parsed.netloc == "hotp"
    return secret, AddParams(digits, counter_based, counter if counter_based else 0)


# ==================== Commands ====================

def read_key(name: str) -> str:
    """Prompt for a key on stderr and read it from stdin"""
    prompt = f"2fa key for {name}: "
    if sys.stdin.isatty():
        try:
            return getpass(prompt, stream=sys.stderr)
        except EOFError as e:
            raise KeychainError("error reading key: end of input") from e

    sys.stderr.write(prompt)
    sys.stderr.flush()
    text = sys.stdin.readline()
    if not text:
        raise KeychainError("error reading key: end of input")
    return text


def copy_to_clipboard(code: str) -> bool:
    """Copy a code to the clipboard, best effort"""
    try:
        pyperclip.copy(code)
    except pyperclip.PyperclipException as e:
        log.warning("copying to clipboard: %s", e)
        return False
    return True


def cmd_add(args, keychain: Keychain):
    """Add a new key"""
    if args.uri:
        text, params = parse_otpauth_uri(args.uri)
    else:
        params = AddParams(digits=args.digits, counter_based=args.hotp)
        text = read_key(args.name)
    keychain.add(args.name, text, params)


def cmd_list(args, keychain: Keychain):
    """List all key names"""
    for name in keychain.names():
        print(name)


def cmd_show(args, keychain: Keychain):
    """Print the code for one key"""
    code = keychain.code(args.name)
    if args.clip:
        copy_to_clipboard(code)
    print(code)

    key = keychain.get(args.name)
    if args.verbose and not key.counter_based:
        print(f"Valid for {get_time_remaining()}s")


def cmd_show_all(args, keychain: Keychain):
    """Print codes for all keys"""
    for code, name in keychain.show_all():
        print(f"{code}\t{name}")


# ==================== Main ====================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="2fa",
        description="2fa - A two-factor authentication agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="With no arguments, prints codes for all time-based keys.",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--add", "-a", action="store_true", help="Add a key")
    action.add_argument("--list", "-l", action="store_true", help="List keys")

    digits = parser.add_mutually_exclusive_group()
    digits.add_argument("-7", dest="digits", action="store_const", const=7, help="Generate 7-digit codes")
    digits.add_argument("-8", dest="digits", action="store_const", const=8, help="Generate 8-digit codes")
    parser.set_defaults(digits=None)

    parser.add_argument("--hotp", action="store_true", help="Add key as HOTP (counter-based) key")
    parser.add_argument("--uri", "-u", help="Add key from an otpauth:// URI")
    parser.add_argument("--clip", "-c", action="store_true", help="Copy code to the clipboard")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show time remaining")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging with timing")
    parser.add_argument("name", nargs="?", help="Key name")
    return parser


def check_usage(parser: argparse.ArgumentParser, args) -> None:
    if args.list and args.name is not None:
        parser.error("--list takes no key name")
    if args.add:
        if args.name is None:
            parser.error("--add requires a key name")
        if args.clip:
            parser.error("--clip cannot be used with --add")
        if args.uri and (args.digits or args.hotp):
            parser.error("--uri cannot be combined with -7, -8 or --hotp")
        if args.digits is None:
            args.digits = 6
    elif args.digits or args.hotp or args.uri:
        parser.error("-7, -8, --hotp and --uri are only valid with --add")
    if args.clip and args.name is None:
        parser.error("--clip requires a key name")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    check_usage(parser, args)

    if args.debug:
        logging.basicConfig(format="2fa: [%(relativeCreated)7.1fms] %(message)s", level=logging.DEBUG)
    else:
        logging.basicConfig(format="2fa: %(message)s", level=logging.WARNING)

    if args.add:
        command = cmd_add
    elif args.list:
        command = cmd_list
    elif args.name is None:
        command = cmd_show_all
    else:
        command = cmd_show

    try:
        if args.name is not None:
            check_name(args.name)
        keychain = Keychain.load(get_keychain_path())
        command(args, keychain)
    except KeychainError as e:
        log.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
