#!/usr/bin/env python3
"""
PIN Vault - Lock and unlock single files with a 4-digit PIN
============================================================

This tool reads a file, mixes it with a repeating key taken from a short
numeric PIN, and writes the result. Running it again with the same PIN
restores the original bytes. A small tag derived from the PIN is stored at
the end of the locked file so that unlocking with the wrong PIN is detected
instead of silently producing garbage.

THIS IS NOT ENCRYPTION:
-----------------------
The transform is a repeating-key XOR and the tag is a 32-bit DJB2 checksum
of the PIN. Anyone holding a locked file can recover the PIN in at most
10,000 tries, or directly from any known plaintext. The format is kept
bit-for-bit compatible with files produced by earlier releases, so the
scheme must not be "upgraded" in place.

CONTAINER FORMAT:
-----------------
    current:  xor(plaintext || be32(djb2(pin)), pin)
    legacy:   xor(plaintext, pin)                      (only when < 4 bytes)

There is no magic byte. A container shorter than 4 bytes cannot hold a tag,
so it is treated as legacy and unlocked without verification. A legacy file
of 4 bytes or more is indistinguishable from a current one and will fail
verification.
"""

import argparse
import getpass
import os
import re
import struct
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import constant_time


# =============================================================================
# FORMAT CONSTANTS
# =============================================================================
# Changing any of these makes previously locked files unreadable.

# The PIN is exactly four ASCII digits
PIN_LENGTH = 4

# Verification tag appended to the plaintext before the transform
TAG_SIZE = 4  # bytes, big-endian unsigned 32-bit

# DJB2 parameters: acc = acc * 33 ^ byte, truncated to 32 bits every step
CHECKSUM_SEED = 5381
CHECKSUM_MULTIPLIER = 33
CHECKSUM_MASK = 0xFFFFFFFF

# Containers shorter than this carry no tag (legacy format)
LEGACY_THRESHOLD = TAG_SIZE

# Overwrite passes used by --shred: random, zeros, random
SECURE_DELETE_PASSES = 3

# Chunk size for overwrite passes
CHUNK_SIZE = 1024 * 1024  # 1 MiB


# =============================================================================
# ERRORS
# =============================================================================
class VaultError(Exception):
    """Base class for every error raised by the vault."""


class InvalidKey(VaultError, ValueError):
    """The PIN is empty, has the wrong length, or contains non-digits."""


class WrongPinOrCorrupt(VaultError, ValueError):
    """
    Tag verification failed after unlocking.

    The vault cannot tell a wrong PIN from a damaged file, or from a legacy
    file long enough to be mistaken for a tagged one.
    """


class IoFailure(VaultError, OSError):
    """The source could not be read or the destination could not be written."""


# =============================================================================
# PIN POLICY
# =============================================================================
class PinPolicy:
    """
    Structural check for PINs entered on the command line or at the prompt.

    Only ASCII digits are accepted. ``str.isdigit`` is not used because it
    also accepts characters such as superscripts and Arabic-Indic digits,
    which would encode to more than one byte each and silently change the
    keystream length.
    """

    PATTERN = re.compile(r'[0-9]{%d}' % PIN_LENGTH)

    @classmethod
    def validate(cls, pin: str) -> Tuple[bool, str]:
        """
        Validate a PIN against the format contract.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(pin, str):
            return False, "PIN must be a string"

        if len(pin) != PIN_LENGTH:
            return False, f"PIN must be exactly {PIN_LENGTH} digits"

        if not cls.PATTERN.fullmatch(pin):
            return False, "PIN must contain digits 0-9 only"

        return True, "PIN accepted"

    @classmethod
    def require(cls, pin: str) -> str:
        """Return ``pin`` unchanged, or raise InvalidKey if it is rejected."""
        is_valid, message = cls.validate(pin)
        if not is_valid:
            raise InvalidKey(message)
        return pin


# =============================================================================
# KEY DERIVATION
# =============================================================================
class KeyDerivation:
    """
    Turns a PIN into the two values the container needs.

    Keystream
    ---------
    The raw ASCII bytes of the PIN, used as-is and repeated to cover the
    buffer. There is no salt, no stretching and no hashing.

    Verification tag
    ----------------
    A 32-bit DJB2 checksum of the PIN, stored big-endian:

        acc = 5381
        for b in pin:
            acc = (acc * 33) ^ b      (mod 2**32)

    Older builds wrote the step as ``((acc << 5) + acc) ^ b``. The two forms
    are the same computation; what matters is the 32-bit wraparound after
    every byte, which this implementation applies explicitly since Python
    integers never overflow.

    The tag is computed over the PIN only, not the file contents, so it says
    "this PIN produced this file" and nothing about content integrity.
    """

    @staticmethod
    def checksum32(data: Union[bytes, str]) -> int:
        if isinstance(data, str):
            data = data.encode('ascii')
        acc = CHECKSUM_SEED
        for b in data:
            acc = ((acc * CHECKSUM_MULTIPLIER) ^ b) & CHECKSUM_MASK
        return acc

    @staticmethod
    def encode_tag(value: int) -> bytes:
        """Pack a 32-bit checksum as 4 big-endian bytes."""
        return struct.pack('>I', value & CHECKSUM_MASK)

    @staticmethod
    def decode_tag(tag: bytes) -> int:
        """
        Inverse of encode_tag.

        Not used on the unlock path, which compares the packed tags in
        constant time instead; kept for callers inspecting a stored tag.
        """
        if len(tag) != TAG_SIZE:
            raise ValueError(f"Tag must be {TAG_SIZE} bytes, got {len(tag)}")
        return struct.unpack('>I', tag)[0]

    @staticmethod
    def derive_keystream(pin: Union[bytes, str]) -> bytes:
        """
        Map the PIN characters to bytes, one to one.

        Raises:
            InvalidKey: if the PIN is empty or not representable as ASCII
        """
        if isinstance(pin, str):
            try:
                pin = pin.encode('ascii')
            except UnicodeEncodeError as e:
                raise InvalidKey("PIN must be ASCII") from e
        keystream = bytes(pin)
        if not keystream:
            raise InvalidKey("PIN must not be empty")
        return keystream

    @classmethod
    def derive_tag(cls, pin: Union[bytes, str]) -> bytes:
        return cls.encode_tag(cls.checksum32(cls.derive_keystream(pin)))


# =============================================================================
# BYTE TRANSFORM
# =============================================================================
class XorTransform:
    """
    Repeating-key XOR: ``out[i] = data[i] ^ key[i % len(key)]``.

    Applying it twice with the same key returns the input, so the same
    object locks and unlocks. It offers no protection against known
    plaintext or frequency analysis.
    """

    def __init__(self, keystream: bytes):
        if not keystream:
            raise InvalidKey("Keystream must not be empty")
        self.keystream = bytes(keystream)

    def apply(self, data: bytes) -> bytes:
        """Return a new buffer of the same length as ``data``."""
        size = len(data)
        if size == 0:
            return b''

        # Whole-buffer XOR through big integers; the key is tiled to size
        repeats = size // len(self.keystream) + 1
        pad = (self.keystream * repeats)[:size]
        mixed = int.from_bytes(data, 'big') ^ int.from_bytes(pad, 'big')
        return mixed.to_bytes(size, 'big')


def transform(buffer: bytes, keystream: bytes) -> bytes:
    """XOR ``buffer`` with the repeating ``keystream``."""
    return XorTransform(keystream).apply(buffer)


# =============================================================================
# CONTAINER FORMAT
# =============================================================================
class Container:
    """
    Lock/unlock protocol for the on-disk container.

    Lock:
        1. tag = be32(checksum32(pin))
        2. buffer = plaintext || tag
        3. container = xor(buffer, pin)

    Unlock:
        1. len < 4  -> legacy: return xor(container, pin), no verification
        2. decoded = xor(container, pin)   (the tag was mixed too)
        3. split decoded into plaintext || stored_tag
        4. stored_tag != be32(checksum32(pin)) -> WrongPinOrCorrupt
        5. return plaintext

    Both calls are pure: nothing is written here, so a failed verification
    can never leave output behind.
    """

    @staticmethod
    def lock(plaintext: bytes, pin: Union[bytes, str]) -> bytes:
        keystream = KeyDerivation.derive_keystream(pin)
        tag = KeyDerivation.derive_tag(keystream)
        return XorTransform(keystream).apply(bytes(plaintext) + tag)

    @staticmethod
    def is_legacy(container: bytes) -> bool:
        """True when the container is too short to hold a tag."""
        return len(container) < LEGACY_THRESHOLD

    @classmethod
    def unlock(cls, container: bytes, pin: Union[bytes, str]) -> bytes:
        keystream = KeyDerivation.derive_keystream(pin)
        decoded = XorTransform(keystream).apply(container)

        if cls.is_legacy(container):
            return decoded

        plaintext, stored_tag = decoded[:-TAG_SIZE], decoded[-TAG_SIZE:]
        expected_tag = KeyDerivation.derive_tag(keystream)

        # Comparing the packed forms is the same as comparing the integers
        if not constant_time.bytes_eq(stored_tag, expected_tag):
            raise WrongPinOrCorrupt(
                "PIN verification failed. Possible causes:\n"
                "  - Incorrect PIN\n"
                "  - File is corrupted\n"
                "  - File is a legacy (untagged) vault file"
            )

        return plaintext


def lock(plaintext: bytes, pin: Union[bytes, str]) -> bytes:
    """Lock ``plaintext`` with ``pin`` and return the container bytes."""
    return Container.lock(plaintext, pin)


def unlock(container: bytes, pin: Union[bytes, str]) -> bytes:
    """Unlock ``container`` with ``pin`` and return the plaintext bytes."""
    return Container.unlock(container, pin)


# =============================================================================
# SECURE FILE OPERATIONS
# =============================================================================
class SecureFileOps:
    """
    File handling for the vault: whole-file reads, all-or-nothing writes,
    and overwrite-before-delete.

    Writes go to a temporary file in the destination directory which is
    fsynced and then moved over the destination with ``os.replace``. A crash
    or error at any point leaves either the old destination or nothing,
    never a truncated file.
    """

    @staticmethod
    def read_bytes(file_path: Path) -> bytes:
        file_path = Path(file_path)
        if not file_path.exists():
            raise IoFailure(f"Input file not found: {file_path}")

        if not file_path.is_file():
            raise IoFailure(f"Not a regular file: {file_path}")

        try:
            with open(file_path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise IoFailure(f"Cannot read {file_path}: {e}") from e

    @staticmethod
    def write_bytes_atomic(file_path: Path, data: bytes) -> Path:
        file_path = Path(file_path)
        out_dir = file_path.parent

        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{file_path.name}.", suffix='.tmp', dir=out_dir
            )
        except OSError as e:
            raise IoFailure(f"Cannot create {file_path}: {e}") from e

        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, file_path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise IoFailure(f"Cannot write {file_path}: {e}") from e

        return file_path

    @staticmethod
    def same_file(first: Path, second: Path) -> bool:
        """True when both paths name the same file, including via links."""
        first = Path(first)
        second = Path(second)
        if first.exists() and second.exists():
            return os.path.samefile(first, second)
        return first.resolve() == second.resolve()

    @staticmethod
    def secure_delete(file_path: Path, passes: int = SECURE_DELETE_PASSES) -> bool:
        """
        Overwrite a file before unlinking it.

        Passes alternate random data and zeros, starting with random.

        LIMITATIONS:
        ------------
        SSD wear levelling, journaling and copy-on-write file systems, and
        snapshots or backups can all keep the original blocks. This only
        gives reasonable assurance on plain magnetic disks.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            return False

        try:
            file_size = file_path.stat().st_size

            with open(file_path, 'r+b') as f:
                for pass_num in range(passes):
                    f.seek(0)
                    remaining = file_size
                    while remaining > 0:
                        chunk_size = min(remaining, CHUNK_SIZE)
                        if pass_num % 2 == 0:
                            f.write(os.urandom(chunk_size))
                        else:
                            f.write(b'\x00' * chunk_size)
                        remaining -= chunk_size

                    f.flush()
                    os.fsync(f.fileno())

            file_path.unlink()
            return True

        except OSError as e:
            print(f"[WARNING] Secure delete failed: {e}")
            # Fall back to a plain unlink
            try:
                file_path.unlink()
            except OSError as unlink_error:
                print(f"[WARNING] Could not remove {file_path}: {unlink_error}")
            return False


# =============================================================================
# RUN LOG
# =============================================================================
def append_run_log(log_path: Optional[Path], message: str) -> None:
    """
    Append ``[timestamp] message`` to the run log, if one was requested.

    A broken log never fails the operation being logged.
    """
    if log_path is None:
        return

    stamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    try:
        with open(log_path, 'a', encoding='utf-8') as f:
            f.write(f"[{stamp}] {message}\n")
    except OSError as e:
        print(f"[WARNING] Could not write run log {log_path}: {e}")


# =============================================================================
# VAULT OPERATIONS
# =============================================================================
class Vault:
    """
    Lock and unlock files with one PIN.

    The PIN is checked against PinPolicy once, here, so that the container
    code only ever sees well-formed keys. It is kept for the lifetime of the
    object and never written anywhere.
    """

    def __init__(
        self,
        pin: str,
        verbose: bool = True,
        log_path: Optional[Path] = None
    ):
        self.pin = PinPolicy.require(pin)
        self.verbose = verbose
        self.log_path = Path(log_path) if log_path else None

    def _step(self, message: str) -> None:
        if self.verbose:
            print(f"  {message}")

    def _check_shred_target(
        self,
        input_path: Path,
        output_path: Path,
        shred: bool
    ) -> None:
        # Shredding the input would destroy the output just written over it
        if shred and SecureFileOps.same_file(input_path, output_path):
            raise IoFailure(
                f"Input and output are the same file, refusing to shred: "
                f"{input_path}"
            )

    def lock_file(
        self,
        input_path: Path,
        output_path: Path,
        shred: bool = False
    ) -> Path:
        """
        Lock a file.

        Args:
            input_path: File to lock
            output_path: Where to write the container
            shred: Securely delete the input after the container is written

        Returns:
            Path to the container

        Raises:
            IoFailure: if ``shred`` is set and the output is the input file
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        try:
            self._check_shred_target(input_path, output_path, shred)

            self._step("Reading input file...")
            plaintext = SecureFileOps.read_bytes(input_path)

            self._step("Locking with PIN...")
            container = lock(plaintext, self.pin)

            self._step("Writing locked file...")
            SecureFileOps.write_bytes_atomic(output_path, container)
        except VaultError as e:
            append_run_log(
                self.log_path,
                f"lock {input_path} FAILED ({type(e).__name__})"
            )
            raise

        append_run_log(
            self.log_path, f"lock {input_path} -> {output_path} OK"
        )

        if shred:
            self._step("Securely deleting original...")
            SecureFileOps.secure_delete(input_path)
            append_run_log(self.log_path, f"shred {input_path}")

        return output_path

    def unlock_file(
        self,
        input_path: Path,
        output_path: Path,
        shred: bool = False
    ) -> Path:
        """
        Unlock a file.

        Nothing is written if the PIN does not verify.

        Args:
            input_path: Locked file
            output_path: Where to write the restored file
            shred: Securely delete the locked file after the output is written

        Returns:
            Path to the restored file

        Raises:
            WrongPinOrCorrupt: if the tag does not match the PIN
            IoFailure: if ``shred`` is set and the output is the input file
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        try:
            self._check_shred_target(input_path, output_path, shred)

            self._step("Reading locked file...")
            container = SecureFileOps.read_bytes(input_path)

            if Container.is_legacy(container):
                self._step("Legacy file (no tag), unlocking without verification...")
            else:
                self._step("Unlocking and verifying PIN...")

            plaintext = unlock(container, self.pin)

            self._step("Writing unlocked file...")
            SecureFileOps.write_bytes_atomic(output_path, plaintext)
        except VaultError as e:
            append_run_log(
                self.log_path,
                f"unlock {input_path} FAILED ({type(e).__name__})"
            )
            raise

        append_run_log(
            self.log_path, f"unlock {input_path} -> {output_path} OK"
        )

        if shred:
            self._step("Securely deleting locked file...")
            SecureFileOps.secure_delete(input_path)
            append_run_log(self.log_path, f"shred {input_path}")

        return output_path


# =============================================================================
# CLI INTERFACE
# =============================================================================
def get_pin(confirm: bool = False, prompt: str = "PIN: ") -> str:
    """Prompt for the PIN without echo, optionally asking twice."""
    pin = getpass.getpass(prompt)

    if confirm:
        pin2 = getpass.getpass("Confirm PIN: ")
        if pin != pin2:
            raise InvalidKey("PINs do not match")

    return pin


def print_banner():
    banner = """
    ╔═══════════════════════════════════════════════════════════════╗
    ║                          PIN VAULT                            ║
    ║              4-digit PIN file locking (XOR + tag)             ║
    ║                                                               ║
    ║  Not encryption: keeps casual eyes out, nothing more          ║
    ╚═══════════════════════════════════════════════════════════════╝
    """
    print(banner)


def print_format_info():
    """Display the container format parameters."""
    print("\n[Container Format]")
    print(f"  Transform: repeating-key XOR, key = PIN bytes ({PIN_LENGTH} bytes)")
    print(f"  Tag: DJB2 checksum of PIN, {TAG_SIZE} bytes big-endian, appended")
    print(f"    - Seed: {CHECKSUM_SEED}")
    print(f"    - Multiplier: {CHECKSUM_MULTIPLIER}")
    print(f"  Legacy files: shorter than {LEGACY_THRESHOLD} bytes, not verified")
    print(f"  Shred: {SECURE_DELETE_PASSES}-pass overwrite")
    print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pinvault',
        description="PIN Vault - lock and unlock files with a 4-digit PIN",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Lock a file:
    %(prog)s lock notes.txt notes.txt.vault 1234

  Unlock a file (prompts for the PIN):
    %(prog)s unlock notes.txt.vault notes.txt

  Lock and securely delete the original:
    %(prog)s lock notes.txt notes.txt.vault --shred

  Show the container format:
    %(prog)s info
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    for name, alias, verb in (
        ('lock', 'encrypt', 'Lock'),
        ('unlock', 'decrypt', 'Unlock'),
    ):
        sub = subparsers.add_parser(
            name, aliases=[alias], help=f'{verb} a file'
        )
        sub.set_defaults(direction=name)
        sub.add_argument('input', help=f'File to {name}')
        sub.add_argument('output', help='Output file path')
        sub.add_argument(
            'pin', nargs='?',
            help=f'{PIN_LENGTH}-digit PIN (prompted for if omitted)'
        )
        sub.add_argument(
            '--shred', action='store_true',
            help='Securely delete the input file afterwards'
        )
        sub.add_argument(
            '--log', metavar='FILE',
            help='Append a timestamped line per operation to FILE'
        )

    subparsers.add_parser('info', help='Show the container format')

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print_banner()
        parser.print_help()
        return

    if args.command == 'info':
        print_banner()
        print_format_info()
        return

    print_banner()

    try:
        pin = args.pin
        if pin is None:
            pin = get_pin(confirm=args.direction == 'lock')

        vault = Vault(pin, log_path=args.log)

        if args.direction == 'lock':
            print(f"\nLocking: {args.input}")
            output = vault.lock_file(
                Path(args.input), Path(args.output), shred=args.shred
            )
            print(f"\n[SUCCESS] Locked file saved to: {output}")

        else:
            print(f"\nUnlocking: {args.input}")
            output = vault.unlock_file(
                Path(args.input), Path(args.output), shred=args.shred
            )
            print(f"\n[SUCCESS] Unlocked file saved to: {output}")

    except VaultError as e:
        print(f"\n[ERROR] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n[ABORTED] Operation cancelled by user.")
        sys.exit(130)


if __name__ == '__main__':
    main()
