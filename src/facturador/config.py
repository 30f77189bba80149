from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "facturador-sunat"

KEYRING_SERVICE = APP_NAME
KEYRING_CERT_USERNAME = "cert-pfx-password"
KEYRING_SOL_USERNAME = "sol-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Returns None if only platformdirs would resolve and the dir does not exist yet.
    """
    from_env = os.environ.get("FACTURADOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/facturador/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")


ENDPOINTS = {
    "beta": "https://e-beta.sunat.gob.pe/ol-ti-itcpfegem-beta/billService",
    "produccion": "https://e-factura.sunat.gob.pe/ol-ti-itcpfegem/billService",
}

# Public test credentials published by SUNAT for the beta environment
BETA_SOL_USER = "MODDATOS"
BETA_SOL_PASSWORD = "MODDATOS"

SUNAT_TIMEOUT = 60.0
SUNAT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Settings:
    """Everything a submission needs from the outside world.

    Built once by the caller and passed explicitly to each pipeline stage.
    """

    env: str
    endpoint: str
    sol_user: str
    sol_password: str
    cert_path: str
    cert_password: str
    data_dir: Path
    timeout: float = SUNAT_TIMEOUT
    max_attempts: int = SUNAT_MAX_ATTEMPTS

    @property
    def out_dir(self) -> Path:
        return self.data_dir / self.env / "out"

    @property
    def cdr_dir(self) -> Path:
        return self.data_dir / self.env / "cdr"

    @property
    def ledger_dir(self) -> Path:
        return self.data_dir / self.env


# --- Keyring helpers ---


def _get_keyring_password(username: str) -> str | None:
    """Try to get a secret from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, username)
    except Exception:
        return None


def _set_keyring_password(username: str, password: str) -> bool:
    """Store a secret in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, username, password)
        return True
    except Exception:
        return False


def _delete_keyring_password(username: str) -> bool:
    """Remove a secret from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, username)
        return True
    except Exception:
        return False


# --- Certificate and SOL credentials ---


def get_cert_path() -> str:
    """Return the path to the .pfx certificate from CERT_PFX_PATH env var.

    Raises KeyError if the variable is not set.
    """
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_password(KEYRING_CERT_USERNAME)
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


def get_sol_credentials(env: str) -> tuple[str, str]:
    """Return the (secondary user, password) pair for the SOL account.

    The beta environment falls back to SUNAT's public test credentials.
    Raises KeyError in production when either value is missing.
    """
    user = os.environ.get("SUNAT_SOL_USER")
    pwd = os.environ.get("SUNAT_SOL_PASSWORD")
    if pwd is None:
        pwd = _get_keyring_password(KEYRING_SOL_USERNAME)
    if env == "beta":
        return user or BETA_SOL_USER, pwd or BETA_SOL_PASSWORD
    if not user:
        raise KeyError("SUNAT_SOL_USER")
    if not pwd:
        raise KeyError("SUNAT_SOL_PASSWORD")
    return user, pwd


def get_timeout() -> float:
    raw = os.environ.get("SUNAT_TIMEOUT")
    if not raw:
        return SUNAT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"SUNAT_TIMEOUT invalido: '{raw}'") from None
    if value <= 0:
        raise ValueError("SUNAT_TIMEOUT debe ser positivo")
    return value


def get_max_attempts() -> int:
    raw = os.environ.get("SUNAT_MAX_ATTEMPTS")
    if not raw:
        return SUNAT_MAX_ATTEMPTS
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"SUNAT_MAX_ATTEMPTS invalido: '{raw}'") from None
    if value < 1:
        raise ValueError("SUNAT_MAX_ATTEMPTS debe ser al menos 1")
    return value


def load_settings(env: str = "beta") -> Settings:
    """Collect endpoint, credentials and paths for *env* into a Settings value."""
    if env not in ENDPOINTS:
        raise ValueError(f"Ambiente desconocido: '{env}' (use: {', '.join(ENDPOINTS)})")
    sol_user, sol_password = get_sol_credentials(env)
    return Settings(
        env=env,
        endpoint=os.environ.get("SUNAT_URL") or ENDPOINTS[env],
        sol_user=sol_user,
        sol_password=sol_password,
        cert_path=get_cert_path(),
        cert_password=get_cert_password(),
        data_dir=get_data_dir(),
        timeout=get_timeout(),
        max_attempts=get_max_attempts(),
    )


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML (or JSON) file, returning the top-level dict."""
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def load_issuer() -> dict | None:
    """Load the default issuer profile from config/issuer.yaml, if present."""
    path = get_config_dir() / "issuer.yaml"
    if not path.is_file():
        return None
    return load_yaml(path)
