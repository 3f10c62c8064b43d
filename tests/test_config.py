"""Tests for remote configuration and stored credentials."""

import os
import stat

import pytest

from strata.config import CredentialStore, Credentials, RemoteConfig, strata_home
from strata.errors import CorruptError, NotFoundError


class TestRemoteConfig:
    def test_round_trip(self, repo):
        RemoteConfig("https://vcs.example.com", "proj").save(repo.root)
        assert RemoteConfig.load(repo.root) == RemoteConfig("https://vcs.example.com", "proj")

    def test_missing(self, repo):
        with pytest.raises(NotFoundError):
            RemoteConfig.load(repo.root)

    def test_malformed(self, repo):
        (repo.meta / "remote.json").write_text('{"baseUrl": "x"}')
        with pytest.raises(CorruptError):
            RemoteConfig.load(repo.root)


class TestCredentialStore:
    def test_home_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STRATA_HOME", str(tmp_path / "home"))
        assert strata_home() == tmp_path / "home"
        assert CredentialStore().path == tmp_path / "home" / "credentials.json"

    def test_save_get_remove(self, tmp_path):
        store = CredentialStore(tmp_path)
        creds = Credentials("https://vcs.example.com", "u1", "me@example.com", "secret")
        store.save(creds)
        assert store.get("https://vcs.example.com/") == creds
        assert store.require("https://vcs.example.com") == creds
        assert store.remove("https://vcs.example.com")
        assert store.get("https://vcs.example.com") is None
        assert not store.remove("https://vcs.example.com")

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_private_file(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.save(Credentials("https://a", "u", "e", "t"))
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    def test_require_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            CredentialStore(tmp_path).require("https://nowhere")

    def test_several_servers(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.save(Credentials("https://a", "u1", "a@x", "t1"))
        store.save(Credentials("https://b", "u2", "b@x", "t2"))
        assert store.get("https://a").token == "t1"
        assert store.get("https://b").token == "t2"
