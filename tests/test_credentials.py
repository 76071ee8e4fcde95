from __future__ import annotations

import json
from pathlib import Path

import pytest

from contextcore_relay.credentials import (
    MASK,
    ChainSecretResolver,
    DirectorySecretResolver,
    EnvSecretResolver,
    MappingSecretResolver,
    SecretScope,
    default_resolver,
)
from contextcore_relay.config import configure
from contextcore_relay.errors import ConfigurationError, SecretNotFound, SecretShapeMismatch
from contextcore_relay.models import SecretRef, SecretShape


def test_mapping_resolver_infers_shapes(resolver: MappingSecretResolver) -> None:
    pair = resolver.resolve(SecretRef("registry", SecretShape.USERNAME_PASSWORD))
    text = resolver.resolve(SecretRef("sonar-token", SecretShape.STRING))
    blob = resolver.resolve(SecretRef("kubeconfig", SecretShape.FILE))

    assert (pair.username, pair.password) == ("deploy", "s3cr3t-pass")
    assert text.text == "tok-123456"
    assert blob.content.startswith(b"apiVersion")


def test_resolved_secret_repr_hides_values(resolver: MappingSecretResolver) -> None:
    pair = resolver.resolve(SecretRef("registry", SecretShape.USERNAME_PASSWORD))
    assert "s3cr3t" not in repr(pair)


def test_unknown_secret_raises_not_found(resolver: MappingSecretResolver) -> None:
    with pytest.raises(SecretNotFound) as info:
        resolver.resolve(SecretRef("nope"))
    assert "nope" in str(info.value)


def test_shape_mismatch(resolver: MappingSecretResolver) -> None:
    with pytest.raises(SecretShapeMismatch) as info:
        resolver.resolve(SecretRef("sonar-token", SecretShape.USERNAME_PASSWORD))
    assert info.value.expected == "username_password"
    assert info.value.actual == "string"


def test_env_resolver_reads_pairs_strings_and_files(tmp_path: Path) -> None:
    key_file = tmp_path / "key.pem"
    key_file.write_bytes(b"-----BEGIN KEY-----")
    environ = {
        "RELAY_SECRET_REGISTRY_USR": "deploy",
        "RELAY_SECRET_REGISTRY_PSW": "pw",
        "RELAY_SECRET_SONAR_TOKEN": "tok",
        "RELAY_SECRET_SIGNING_KEY_FILE": str(key_file),
    }
    resolver = EnvSecretResolver(prefix="RELAY_SECRET_", environ=environ)

    assert resolver.resolve(SecretRef("registry", SecretShape.USERNAME_PASSWORD)).password == "pw"
    assert resolver.resolve(SecretRef("sonar-token")).text == "tok"
    assert resolver.resolve(SecretRef("signing.key", SecretShape.FILE)).content == b"-----BEGIN KEY-----"
    assert resolver.lookup("absent") is None


def test_directory_resolver(tmp_path: Path) -> None:
    (tmp_path / "registry.pair.json").write_text(json.dumps({"username": "u", "password": "p"}))
    (tmp_path / "kubeconfig.file").write_bytes(b"kind: Config")
    (tmp_path / "token").write_text("abc\n")
    resolver = DirectorySecretResolver(tmp_path)

    assert resolver.resolve(SecretRef("registry", SecretShape.USERNAME_PASSWORD)).username == "u"
    assert resolver.resolve(SecretRef("kubeconfig", SecretShape.FILE)).content == b"kind: Config"
    assert resolver.resolve(SecretRef("token")).text == "abc"
    assert resolver.lookup("../etc/passwd") is None


def test_directory_resolver_rejects_malformed_pair(tmp_path: Path) -> None:
    (tmp_path / "registry.pair.json").write_text('{"username": "u"}')
    with pytest.raises(ConfigurationError):
        DirectorySecretResolver(tmp_path).lookup("registry")


def test_directory_resolver_requires_a_directory() -> None:
    with pytest.raises(ConfigurationError):
        DirectorySecretResolver()


def test_chain_resolver_first_match_wins() -> None:
    chain = ChainSecretResolver(
        [MappingSecretResolver({"a": "first"}), MappingSecretResolver({"a": "second", "b": "only"})]
    )
    assert chain.resolve(SecretRef("a")).text == "first"
    assert chain.resolve(SecretRef("b")).text == "only"
    with pytest.raises(SecretNotFound):
        chain.resolve(SecretRef("c"))


def test_default_resolver_includes_secrets_dir(tmp_path: Path) -> None:
    (tmp_path / "token").write_text("from-dir")
    configure(secrets_dir=str(tmp_path))

    assert default_resolver().resolve(SecretRef("token")).text == "from-dir"


def test_scope_binds_every_shape(resolver: MappingSecretResolver) -> None:
    refs = [
        SecretRef("registry", SecretShape.USERNAME_PASSWORD, variable="REG"),
        SecretRef("sonar-token"),
        SecretRef("kubeconfig", SecretShape.FILE, variable="KUBECONFIG"),
    ]
    with SecretScope(refs, resolver) as scope:
        bindings = scope.bindings
        kube_path = Path(bindings["KUBECONFIG"])

        assert bindings["REG_USR"] == "deploy"
        assert bindings["REG_PSW"] == "s3cr3t-pass"
        assert bindings["REG"] == "deploy:s3cr3t-pass"
        assert bindings["SONAR_TOKEN"] == "tok-123456"
        assert kube_path.read_bytes().startswith(b"apiVersion")
        assert kube_path.stat().st_mode & 0o777 == 0o600

    assert not kube_path.exists()
    assert not kube_path.parent.exists()
    assert scope.bindings == {}
    assert not scope.active


def test_scope_erases_files_when_body_raises(resolver: MappingSecretResolver) -> None:
    refs = [SecretRef("kubeconfig", SecretShape.FILE)]
    with pytest.raises(RuntimeError):
        with SecretScope(refs, resolver) as scope:
            path = scope.files[0]
            assert path.exists()
            raise RuntimeError("stage blew up")

    assert not path.exists()
    assert scope.bindings == {}


def test_scope_releases_partial_acquisition(resolver: MappingSecretResolver) -> None:
    scope = SecretScope(
        [SecretRef("kubeconfig", SecretShape.FILE), SecretRef("missing")],
        resolver,
    )
    with pytest.raises(SecretNotFound):
        scope.acquire()

    assert scope.files == []
    assert scope.bindings == {}


def test_scope_masks_secret_values(resolver: MappingSecretResolver) -> None:
    refs = [SecretRef("registry", SecretShape.USERNAME_PASSWORD, variable="REG"), SecretRef("sonar-token")]
    with SecretScope(refs, resolver) as scope:
        masked = scope.mask("login deploy:s3cr3t-pass token=tok-123456 pw=s3cr3t-pass")

    assert "s3cr3t" not in masked
    assert "tok-123456" not in masked
    assert masked.count(MASK) == 3
