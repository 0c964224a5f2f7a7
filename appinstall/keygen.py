# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
`appinstall-keygen`: create the key a package builder signs with.

The key file holds one line, the base64 of a raw 32-byte Ed25519 seed, and is
readable by its owner only. Whoever installs packages passes the matching
public key (`--print-pubkey`) to `--trust-key`.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from appinstall.crypto import b64_encode, compute_ed25519_kid, ed25519_public_bytes_raw


@dataclass(frozen=True)
class SigningKey:
	seed: bytes
	pubkey: bytes

	@property
	def kid(self) -> str:
		return compute_ed25519_kid(self.pubkey)


def new_signing_key() -> SigningKey:
	seed = os.urandom(32)
	pub = ed25519_public_bytes_raw(Ed25519PrivateKey.from_private_bytes(seed).public_key())
	return SigningKey(seed=seed, pubkey=pub)


def write_signing_key(key: SigningKey, path: Path) -> None:
	path.parent.mkdir(parents=True, exist_ok=True)
	# Owner-only from creation on.
	fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
	with os.fdopen(fd, "w", encoding="utf-8") as f:
		f.write(b64_encode(key.seed) + "\n")
	path.chmod(0o600)


def main(argv: list[str] | None = None) -> int:
	p = argparse.ArgumentParser(prog="appinstall-keygen", description="Create an Ed25519 key for signing install packages")
	p.add_argument("--out", type=Path, required=True, help="where to write the private key file")
	p.add_argument("--print-pubkey", action="store_true", help="print the public key to pass to --trust-key")
	p.add_argument("--print-kid", action="store_true", help="print the key id recorded in package signatures")
	args = p.parse_args(argv)

	key = new_signing_key()
	try:
		write_signing_key(key, args.out)
	except OSError as err:
		p.error(f"cannot write {args.out}: {err}")
	if args.print_pubkey:
		print(b64_encode(key.pubkey))
	if args.print_kid:
		print(key.kid)
	return 0
