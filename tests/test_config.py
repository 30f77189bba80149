from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

import facturador.config as config_mod


@pytest.fixture
def no_keyring():
    with patch.object(config_mod, "_get_keyring_password", return_value=None):
        yield


@pytest.fixture
def clean_env(monkeypatch):
    for var in (
        "SUNAT_SOL_USER",
        "SUNAT_SOL_PASSWORD",
        "SUNAT_URL",
        "SUNAT_TIMEOUT",
        "SUNAT_MAX_ATTEMPTS",
        "CERT_PFX_PATH",
        "CERT_PFX_PASSWORD",
    ):
        monkeypatch.delenv(var, raising=False)


class TestResolveDir:
    def test_from_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FACTURADOR_DATA_DIR", str(tmp_path))
        assert config_mod.get_data_dir() == tmp_path

    def test_project_root_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_CONFIG_DIR", raising=False)
        fake_pkg = tmp_path / "src" / "facturador"
        fake_pkg.mkdir(parents=True)
        (tmp_path / "config").mkdir()
        monkeypatch.setattr(config_mod, "__file__", str(fake_pkg / "config.py"))
        assert config_mod.get_config_dir() == tmp_path / "config"

    def test_platformdirs_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_DATA_DIR", raising=False)
        fake_pkg = tmp_path / "nowhere" / "src" / "facturador"
        fake_pkg.mkdir(parents=True)
        monkeypatch.setattr(config_mod, "__file__", str(fake_pkg / "config.py"))
        assert "facturador-sunat" in str(config_mod.get_data_dir())


@pytest.mark.usefixtures("clean_env", "no_keyring")
class TestSolCredentials:
    def test_beta_defaults(self):
        assert config_mod.get_sol_credentials("beta") == ("MODDATOS", "MODDATOS")

    def test_env_overrides_beta(self, monkeypatch):
        monkeypatch.setenv("SUNAT_SOL_USER", "USUARIO1")
        monkeypatch.setenv("SUNAT_SOL_PASSWORD", "clave")
        assert config_mod.get_sol_credentials("beta") == ("USUARIO1", "clave")

    def test_production_requires_user(self):
        with pytest.raises(KeyError, match="SUNAT_SOL_USER"):
            config_mod.get_sol_credentials("produccion")

    def test_production_requires_password(self, monkeypatch):
        monkeypatch.setenv("SUNAT_SOL_USER", "USUARIO1")
        with pytest.raises(KeyError, match="SUNAT_SOL_PASSWORD"):
            config_mod.get_sol_credentials("produccion")

    def test_production_password_from_keyring(self, monkeypatch):
        monkeypatch.setenv("SUNAT_SOL_USER", "USUARIO1")
        with patch.object(config_mod, "_get_keyring_password", return_value="kr") as mock_get:
            assert config_mod.get_sol_credentials("produccion") == ("USUARIO1", "kr")
        mock_get.assert_called_once_with(config_mod.KEYRING_SOL_USERNAME)


@pytest.mark.usefixtures("clean_env")
class TestCertEnv:
    def test_get_cert_path(self, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PATH", "/certs/empresa.pfx")
        assert config_mod.get_cert_path() == "/certs/empresa.pfx"

    def test_get_cert_path_missing(self):
        with pytest.raises(KeyError):
            config_mod.get_cert_path()

    def test_password_env_takes_priority(self, monkeypatch):
        monkeypatch.setenv("CERT_PFX_PASSWORD", "from-env")
        with patch.object(config_mod, "_get_keyring_password", return_value="from-keyring"):
            assert config_mod.get_cert_password() == "from-env"

    def test_password_keyring_fallback(self):
        with patch.object(config_mod, "_get_keyring_password", return_value="from-keyring"):
            assert config_mod.get_cert_password() == "from-keyring"

    @pytest.mark.usefixtures("no_keyring")
    def test_password_missing(self):
        with pytest.raises(KeyError):
            config_mod.get_cert_password()


@pytest.mark.usefixtures("clean_env")
class TestNumericSettings:
    def test_timeout_default(self):
        assert config_mod.get_timeout() == config_mod.SUNAT_TIMEOUT

    def test_timeout_from_env(self, monkeypatch):
        monkeypatch.setenv("SUNAT_TIMEOUT", "12.5")
        assert config_mod.get_timeout() == 12.5

    @pytest.mark.parametrize("raw", ["abc", "0", "-3"])
    def test_timeout_invalid(self, monkeypatch, raw):
        monkeypatch.setenv("SUNAT_TIMEOUT", raw)
        with pytest.raises(ValueError, match="SUNAT_TIMEOUT"):
            config_mod.get_timeout()

    def test_max_attempts_default(self):
        assert config_mod.get_max_attempts() == 3

    def test_max_attempts_from_env(self, monkeypatch):
        monkeypatch.setenv("SUNAT_MAX_ATTEMPTS", "1")
        assert config_mod.get_max_attempts() == 1

    @pytest.mark.parametrize("raw", ["dos", "0"])
    def test_max_attempts_invalid(self, monkeypatch, raw):
        monkeypatch.setenv("SUNAT_MAX_ATTEMPTS", raw)
        with pytest.raises(ValueError, match="SUNAT_MAX_ATTEMPTS"):
            config_mod.get_max_attempts()


@pytest.mark.usefixtures("clean_env", "no_keyring")
class TestLoadSettings:
    def test_beta(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CERT_PFX_PATH", "/c.pfx")
        monkeypatch.setenv("CERT_PFX_PASSWORD", "pw")
        monkeypatch.setenv("FACTURADOR_DATA_DIR", str(tmp_path))
        settings = config_mod.load_settings("beta")

        assert settings.endpoint == config_mod.ENDPOINTS["beta"]
        assert settings.sol_user == "MODDATOS"
        assert settings.max_attempts == 3
        assert settings.out_dir == tmp_path / "beta" / "out"
        assert settings.cdr_dir == tmp_path / "beta" / "cdr"
        assert settings.ledger_dir == tmp_path / "beta"

    def test_url_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CERT_PFX_PATH", "/c.pfx")
        monkeypatch.setenv("CERT_PFX_PASSWORD", "pw")
        monkeypatch.setenv("SUNAT_URL", "http://localhost:8080/billService")
        assert config_mod.load_settings().endpoint == "http://localhost:8080/billService"

    def test_unknown_env(self):
        with pytest.raises(ValueError, match="Ambiente desconocido"):
            config_mod.load_settings("staging")

    def test_missing_cert(self):
        with pytest.raises(KeyError):
            config_mod.load_settings("beta")


class TestKeyringHelpers:
    def test_get_success(self):
        mock_kr = MagicMock()
        mock_kr.get_password.return_value = "stored-pw"
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_password(config_mod.KEYRING_CERT_USERNAME) == "stored-pw"
        mock_kr.get_password.assert_called_once_with(
            config_mod.KEYRING_SERVICE, config_mod.KEYRING_CERT_USERNAME
        )

    def test_get_exception(self):
        mock_kr = MagicMock()
        mock_kr.get_password.side_effect = RuntimeError("no backend")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._get_keyring_password("x") is None

    def test_set(self):
        mock_kr = MagicMock()
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_password("x", "pw") is True
        mock_kr.set_password.assert_called_once_with(config_mod.KEYRING_SERVICE, "x", "pw")

    def test_set_failure(self):
        mock_kr = MagicMock()
        mock_kr.set_password.side_effect = RuntimeError("locked")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._set_keyring_password("x", "pw") is False

    def test_delete_failure(self):
        mock_kr = MagicMock()
        mock_kr.delete_password.side_effect = RuntimeError("not found")
        with patch.dict("sys.modules", {"keyring": mock_kr}):
            assert config_mod._delete_keyring_password("x") is False


class TestYaml:
    def test_load_yaml(self, tmp_path):
        f = tmp_path / "test.yaml"
        f.write_text(yaml.dump({"ruc": "20123456789"}))
        assert config_mod.load_yaml(f) == {"ruc": "20123456789"}

    def test_load_issuer(self, monkeypatch, tmp_path):
        (tmp_path / "issuer.yaml").write_text(yaml.dump({"ruc": "20123456789"}))
        monkeypatch.setattr(config_mod, "get_config_dir", lambda: tmp_path)
        assert config_mod.load_issuer() == {"ruc": "20123456789"}

    def test_load_issuer_missing(self, monkeypatch, tmp_path):
        monkeypatch.setattr(config_mod, "get_config_dir", lambda: tmp_path)
        assert config_mod.load_issuer() is None
