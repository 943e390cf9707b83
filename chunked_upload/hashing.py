"""
Content-addressed digests in the "<algorithm>:<hex>" wire format.
"""
import hashlib
import hmac
import re
from pathlib import Path
from typing import Union

READ_BLOCK_SIZE = 1024 * 1024


class HashVerifier:
    """Computes, validates and compares self-describing content digests.

    Digests look like ``sha256:<64 lowercase hex chars>``. The format is
    shared with upload clients, so it must not change.
    """

    def __init__(self, algorithm: str = "sha256"):
        """Initialize the verifier.

        Args:
            algorithm: Name of a hashlib algorithm with a fixed digest size
        """
        try:
            probe = hashlib.new(algorithm)
        except ValueError:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}") from None
        if probe.digest_size == 0:
            raise ValueError(f"Hash algorithm has no fixed digest size: {algorithm}")

        self.algorithm = algorithm
        self.prefix = f"{algorithm}:"
        self.hex_length = probe.digest_size * 2
        self._pattern = re.compile(
            rf"{re.escape(algorithm)}:[0-9a-f]{{{self.hex_length}}}"
        )

    def hash(self, data: bytes) -> str:
        """Compute the digest of a byte string.

        Args:
            data: Bytes to hash

        Returns:
            Digest string in "<algorithm>:<hex>" format
        """
        return self.prefix + hashlib.new(self.algorithm, data).hexdigest()

    def hash_file(self, path: Union[str, Path]) -> str:
        """Compute the digest of a file without loading it into memory.

        Args:
            path: Path to the file to hash

        Returns:
            Digest string in "<algorithm>:<hex>" format
        """
        h = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(READ_BLOCK_SIZE), b""):
                h.update(block)
        return self.prefix + h.hexdigest()

    def is_well_formed(self, digest: object) -> bool:
        """Check the digest format without computing anything."""
        return isinstance(digest, str) and self._pattern.fullmatch(digest) is not None

    def matches(self, a: str, b: str) -> bool:
        """Compare two digests in constant time.

        Only the length check can return early; equal-length inputs are
        always compared in full.
        """
        a_bytes = a.encode("utf-8")
        b_bytes = b.encode("utf-8")
        if len(a_bytes) != len(b_bytes):
            return False
        return hmac.compare_digest(a_bytes, b_bytes)

    def strip_prefix(self, digest: str) -> str:
        """Return the hex portion of a digest, with or without its tag."""
        if digest.startswith(self.prefix):
            return digest[len(self.prefix):]
        return digest


default_verifier = HashVerifier()
