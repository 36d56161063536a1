"""Host/guest protocol: wire codec, memory bridge and manifest types."""

from tessera.protocol.manifest import (
    API_VERSION,
    SUPPORTED_API_VERSIONS,
    ArgSpec,
    Capabilities,
    CapabilityKind,
    CapabilityRequest,
    CommandSpec,
    ExecuteResult,
    PathPattern,
    PluginManifest,
    StdioCapability,
    decode_manifest,
    decode_result,
    encode_args,
)
from tessera.protocol.memory import CANONICAL_EXPORTS, LEGACY_EXPORTS, ExportNames, pack, unpack

__all__ = [
    "API_VERSION",
    "CANONICAL_EXPORTS",
    "LEGACY_EXPORTS",
    "SUPPORTED_API_VERSIONS",
    "ArgSpec",
    "Capabilities",
    "CapabilityKind",
    "CapabilityRequest",
    "CommandSpec",
    "ExecuteResult",
    "ExportNames",
    "PathPattern",
    "PluginManifest",
    "StdioCapability",
    "decode_manifest",
    "decode_result",
    "encode_args",
    "pack",
    "unpack",
]
