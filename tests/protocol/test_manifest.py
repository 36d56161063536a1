"""Tests for manifest and result (de)serialization."""

import pytest

from tessera.errors import ApiVersionMismatch, LoadError, ProtocolError
from tessera.protocol import wire
from tessera.protocol.manifest import (
    API_VERSION,
    SUPPORTED_API_VERSIONS,
    SYSTEM_ERROR_CODE,
    USER_ERROR_CODE,
    ArgSpec,
    Capabilities,
    CapabilityKind,
    CapabilityRequest,
    CommandSpec,
    ExecuteResult,
    PathPattern,
    PluginManifest,
    StdioCapability,
    decode_args,
    decode_manifest,
    decode_result,
    encode_args,
    encode_manifest,
    encode_result,
)


@pytest.fixture
def full_manifest() -> PluginManifest:
    return PluginManifest(
        command=CommandSpec(
            name="db",
            about="Database tools",
            version="0.3.1",
            author="ops",
            args=(
                ArgSpec(name="verbose", long="verbose", short="v", help="Chatty output"),
                ArgSpec(
                    name="format",
                    long="format",
                    value_name="FMT",
                    default_value="table",
                    possible_values=("table", "json"),
                ),
            ),
            subcommands=(
                CommandSpec(
                    name="migrate",
                    about="Apply migrations",
                    args=(ArgSpec(name="target", required=True),),
                ),
            ),
        ),
        capabilities=Capabilities(
            fs_read=(PathPattern("./migrations", recursive=True),),
            fs_write=(PathPattern("/tmp/db-cache"),),
            env_read=("DATABASE_URL", "DB_*"),
            stdio=StdioCapability(stdout=True, stderr=True),
        ),
    )


class TestManifestRoundTrip:
    def test_round_trip_is_identity(self, full_manifest):
        assert decode_manifest(encode_manifest(full_manifest)) == full_manifest

    def test_minimal_round_trip(self):
        manifest = PluginManifest(command=CommandSpec(name="hello"))
        assert decode_manifest(encode_manifest(manifest)) == manifest

    def test_version_one_without_capabilities(self):
        manifest = PluginManifest(command=CommandSpec(name="hello"), api_version=1)
        assert "capabilities" not in manifest.to_wire()
        assert decode_manifest(encode_manifest(manifest)) == manifest

    def test_missing_capabilities_mean_no_access(self):
        data = wire.encode({"api_version": 2, "command": {"name": "hello"}})
        manifest = decode_manifest(data)
        assert manifest.capabilities == Capabilities()
        assert manifest.capabilities.is_empty

    def test_name_property(self, full_manifest):
        assert full_manifest.name == "db"


class TestManifestValidation:
    def test_api_version_checked_first(self):
        # The command is garbage, but the version is what gets reported.
        data = wire.encode({"api_version": 99, "command": 5})
        with pytest.raises(ApiVersionMismatch) as exc_info:
            decode_manifest(data)
        assert exc_info.value.actual == 99
        assert exc_info.value.supported == tuple(sorted(SUPPORTED_API_VERSIONS))
        assert exc_info.value.expected == API_VERSION
        assert isinstance(exc_info.value, LoadError)

    def test_missing_api_version(self):
        with pytest.raises(ProtocolError, match="api_version"):
            decode_manifest(wire.encode({"command": {"name": "x"}}))

    def test_missing_command_name(self):
        with pytest.raises(ProtocolError):
            decode_manifest(wire.encode({"api_version": 2, "command": {"about": "x"}}))

    @pytest.mark.parametrize("name", ["", "has space", "-dash", "UPPER!"])
    def test_invalid_command_names(self, name):
        with pytest.raises(ProtocolError):
            decode_manifest(wire.encode({"api_version": 2, "command": {"name": name}}))

    def test_short_flag_must_be_one_character(self):
        data = wire.encode(
            {"api_version": 2, "command": {"name": "x", "args": [{"name": "a", "short": "ab"}]}}
        )
        with pytest.raises(ProtocolError):
            decode_manifest(data)

    def test_wrong_field_types(self):
        data = wire.encode(
            {"api_version": 2, "command": {"name": "x"}, "capabilities": {"env_read": "HOME"}}
        )
        with pytest.raises(ProtocolError):
            decode_manifest(data)

    def test_not_a_map(self):
        with pytest.raises(ProtocolError):
            decode_manifest(wire.encode(["api_version", 2]))


class TestCapabilities:
    def test_requests_flatten_in_order(self, full_manifest):
        requests = full_manifest.capabilities.requests()
        assert requests == [
            CapabilityRequest(CapabilityKind.FS_READ, "./migrations", True),
            CapabilityRequest(CapabilityKind.FS_WRITE, "/tmp/db-cache"),
            CapabilityRequest(CapabilityKind.ENV_READ, "DATABASE_URL"),
            CapabilityRequest(CapabilityKind.ENV_READ, "DB_*"),
            CapabilityRequest(CapabilityKind.STDOUT),
            CapabilityRequest(CapabilityKind.STDERR),
        ]

    def test_hash_is_stable_and_sensitive(self):
        base = Capabilities(env_read=("HOME",))
        assert base.compute_hash() == Capabilities(env_read=("HOME",)).compute_hash()
        assert base.compute_hash() != Capabilities(env_read=("HOME", "USER")).compute_hash()
        assert base.compute_hash() != Capabilities().compute_hash()

    def test_net_is_network(self):
        assert CapabilityKind.NET.is_network
        assert not CapabilityKind.FS_READ.is_network


class TestExecuteResult:
    def test_success_wire_form(self):
        assert encode_result(ExecuteResult.ok("Echo: World")) == b"\x81\xa7Success\xabEcho: World"

    def test_error_wire_form(self):
        assert wire.decode(encode_result(ExecuteResult.error("bad"))) == {"Error": "bad"}

    def test_decode_success(self):
        result = decode_result(b"\x81\xa7Success\xafHello from Zig!")
        assert result == ExecuteResult.ok("Hello from Zig!")
        assert result.code == 0

    def test_decode_error_is_user_error(self):
        result = decode_result(wire.encode({"Error": "no such table"}))
        assert not result.success
        assert result.code == USER_ERROR_CODE
        assert result.message == "no such table"
        assert not result.is_system_error

    def test_decode_structured_error(self):
        result = decode_result(wire.encode({"Error": {"code": 3, "message": "conflict"}}))
        assert result == ExecuteResult.error("conflict", 3)

    @pytest.mark.parametrize("code", [0, SYSTEM_ERROR_CODE])
    def test_guest_cannot_claim_reserved_codes(self, code):
        result = decode_result(wire.encode({"Error": {"code": code, "message": "boom"}}))
        assert result == ExecuteResult.error("boom", USER_ERROR_CODE)
        assert not result.is_system_error

    def test_system_error(self):
        result = ExecuteResult.system_error("trapped")
        assert result.code == SYSTEM_ERROR_CODE
        assert result.is_system_error

    @pytest.mark.parametrize(
        "value",
        [
            {"Success": 5},
            {"Other": "x"},
            {"Success": "a", "Error": "b"},
            {},
            "Success",
        ],
    )
    def test_malformed_results(self, value):
        with pytest.raises(ProtocolError):
            decode_result(wire.encode(value))


class TestArgs:
    def test_encode_args(self):
        assert encode_args([]) == b"\x90"
        assert encode_args(["World"]) == b"\x91\xa5World"

    def test_decode_args(self):
        assert decode_args(encode_args(["a", "b c"])) == ["a", "b c"]
        with pytest.raises(ProtocolError):
            decode_args(wire.encode(["a", 1]))
