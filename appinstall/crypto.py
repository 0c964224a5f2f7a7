# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Manifest signatures.

Pinned policy:
- Signature scheme: Ed25519.
- Keys are base64 of raw 32-byte keys; signatures base64 of raw 64 bytes.
- The signature covers the exact bytes of `APPINSTALL-INF/manifest.json`.
  The manifest pins the sha256 of every payload file, so verifying it and
  then the payload hashes covers the whole package.

Signature resource schema:
{
  "format": "appinstall-sig",
  "version": 0,
  "manifest_sha256": "sha256:<hex>",
  "signatures": [ { "algo": "ed25519", "kid": "...", "pubkey": "<b64>", "sig": "<b64>" } ]
}
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

SIG_FORMAT = "appinstall-sig"


def sha256_hex(data: bytes) -> str:
	return hashlib.sha256(data).hexdigest()


def b64_encode(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def b64_decode(text: str) -> bytes:
	return base64.b64decode(text.encode("ascii"), validate=True)


def compute_ed25519_kid(pubkey_raw: bytes) -> str:
	"""
	Compute key id (kid) for an Ed25519 public key.

	Pinned scheme:
	  kid = "ed25519:" + base64(sha256(pubkey_raw))
	"""
	return "ed25519:" + b64_encode(hashlib.sha256(pubkey_raw).digest())


def ed25519_public_bytes_raw(pubkey) -> bytes:
	return pubkey.public_bytes(
		encoding=serialization.Encoding.Raw,
		format=serialization.PublicFormat.Raw,
	)


def load_seed32(path: Path) -> bytes:
	"""
	Load a private signing key seed from a file.

	Format (pinned): base64 of the raw 32-byte Ed25519 seed, whitespace allowed.
	"""
	text = path.read_text(encoding="utf-8").strip()
	try:
		raw = b64_decode(text)
	except Exception as err:
		raise ValueError("invalid base64 in key seed file") from err
	if len(raw) != 32:
		raise ValueError("ed25519 private key seed must decode to 32 bytes")
	return raw


def decode_pubkey(text: str) -> bytes:
	try:
		raw = b64_decode(text.strip())
	except Exception as err:
		raise ValueError("invalid base64 in public key") from err
	if len(raw) != 32:
		raise ValueError("ed25519 public key must decode to 32 bytes")
	return raw


def sign_manifest(manifest_bytes: bytes, *, priv_seed32: bytes) -> bytes:
	"""Return the signature resource bytes for `manifest_bytes`."""
	priv = Ed25519PrivateKey.from_private_bytes(priv_seed32)
	sig = priv.sign(manifest_bytes)
	pub = ed25519_public_bytes_raw(priv.public_key())
	obj = {
		"format": SIG_FORMAT,
		"version": 0,
		"manifest_sha256": f"sha256:{sha256_hex(manifest_bytes)}",
		"signatures": [{"algo": "ed25519", "kid": compute_ed25519_kid(pub), "pubkey": b64_encode(pub), "sig": b64_encode(sig)}],
	}
	return (json.dumps(obj, sort_keys=True, separators=(",", ":")) + "\n").encode("utf-8")


@dataclass(frozen=True)
class SigEntry:
	kid: str
	sig_raw: bytes


def load_signature(data: bytes) -> tuple[str, list[SigEntry]]:
	"""Parse a signature resource into (manifest sha256 hex, entries)."""
	try:
		obj: Any = json.loads(data.decode("utf-8"))
	except (UnicodeDecodeError, json.JSONDecodeError) as err:
		raise ValueError("signature resource is not valid JSON") from err
	if not isinstance(obj, dict) or obj.get("format") != SIG_FORMAT or obj.get("version") != 0:
		raise ValueError("unsupported signature format/version")
	sha = obj.get("manifest_sha256")
	if not isinstance(sha, str) or not sha.startswith("sha256:"):
		raise ValueError("signature resource missing manifest_sha256")
	raw_sigs = obj.get("signatures")
	if not isinstance(raw_sigs, list):
		raise ValueError("signature resource signatures must be an array")
	entries: list[SigEntry] = []
	for s in raw_sigs:
		if not isinstance(s, dict) or s.get("algo") != "ed25519":
			continue
		kid = s.get("kid")
		sig_b64 = s.get("sig")
		if not isinstance(kid, str) or not isinstance(sig_b64, str):
			continue
		try:
			sig_raw = b64_decode(sig_b64)
		except Exception as err:
			raise ValueError("signature resource contains invalid base64 in 'sig'") from err
		if len(sig_raw) != 64:
			raise ValueError("ed25519 signature must be 64 bytes")
		entries.append(SigEntry(kid=kid, sig_raw=sig_raw))
	return sha.split("sha256:", 1)[1], entries


def verify_ed25519(*, pubkey_raw: bytes, message: bytes, signature_raw: bytes) -> bool:
	try:
		Ed25519PublicKey.from_public_bytes(pubkey_raw).verify(signature_raw, message)
	except InvalidSignature:
		return False
	return True


def verify_manifest_signature(manifest_bytes: bytes, sig_bytes: bytes, *, trusted_keys: list[bytes]) -> str:
	"""
	Verify that one of `trusted_keys` signed `manifest_bytes`.

	Returns the kid of the first trusted key with a valid signature and raises
	ValueError otherwise. Only trusted keys are used; a pubkey carried in the
	signature resource is informational.
	"""
	manifest_sha, entries = load_signature(sig_bytes)
	if manifest_sha != sha256_hex(manifest_bytes):
		raise ValueError("signature does not match the manifest (sha256 mismatch)")
	trusted_by_kid = {compute_ed25519_kid(k): k for k in trusted_keys}
	for e in entries:
		key = trusted_by_kid.get(e.kid)
		if key is None:
			continue
		if verify_ed25519(pubkey_raw=key, message=manifest_bytes, signature_raw=e.sig_raw):
			return e.kid
	raise ValueError("no valid signature from a trusted key")
