"""HMAC signatures over plugin manifests."""

from __future__ import annotations

import hashlib
import hmac
import json

from warden.plugins.errors import ManifestSignatureError
from warden.plugins.manifest import PluginManifest


def canonical_manifest(manifest: PluginManifest) -> bytes:
    """Serialise a manifest deterministically, without its signature."""
    payload = manifest.model_dump(mode="json", by_alias=True, exclude={"signature"})
    # frozensets have no stable order
    payload["hooks"] = sorted(payload.get("hooks") or [])
    payload["exports"] = sorted(payload.get("exports") or [])
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def sign_manifest(manifest: PluginManifest, key: str) -> PluginManifest:
    """Return a copy of the manifest carrying its HMAC-SHA256 signature."""
    digest = hmac.new(key.encode(), canonical_manifest(manifest), hashlib.sha256).hexdigest()
    return manifest.model_copy(update={"signature": digest})


def verify_manifest(
    manifest: PluginManifest,
    key: str | None,
    trusted_authors: list[str] | None = None,
    require_signature: bool = True,
) -> None:
    """Check a manifest's author and signature.

    Args:
        manifest: Manifest to verify
        key: Shared signing key
        trusted_authors: When non-empty, the only accepted authors
        require_signature: Whether an unsigned manifest is rejected

    Raises:
        ManifestSignatureError: If verification fails
    """
    if trusted_authors and manifest.author not in trusted_authors:
        raise ManifestSignatureError(
            f"Author '{manifest.author}' of plugin {manifest.id} is not trusted", manifest.id
        )

    if not require_signature:
        return
    if not key:
        raise ManifestSignatureError("No signing key configured", manifest.id)
    if not manifest.signature:
        raise ManifestSignatureError(f"Plugin {manifest.id} is not signed", manifest.id)

    expected = hmac.new(key.encode(), canonical_manifest(manifest), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, manifest.signature):
        raise ManifestSignatureError(f"Invalid signature for plugin {manifest.id}", manifest.id)
