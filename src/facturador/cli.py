from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import stat
import sys
from importlib.resources import files
from pathlib import Path

import yaml

TEMPLATES = [
    "issuer.yaml.example",
    "documents/factura.yaml.example",
    "documents/boleta.yaml.example",
]


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed.

    Uses dotenv.set_key for proper quoting (handles #, spaces, etc.).
    """
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        print(f"\n  AVISO: {env_file} tiene permisos abiertos.")
        print("  Recomendacion: chmod 600", env_file)


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate setup. Returns True if cert was configured."""
    from facturador.config import (
        KEYRING_CERT_USERNAME,
        _delete_keyring_password,
        _set_keyring_password,
    )
    from facturador.utils.certificate import validate_certificate

    print()
    print("Configuracion del certificado digital")
    print("─────────────────────────────────────")
    print()

    while True:
        pfx_path = input("Ruta del certificado .pfx/.p12 (vacio para omitir): ").strip()
        if not pfx_path:
            print("  Configuracion de certificado omitida.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  Archivo no encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Contrasena del certificado: ")

    print()
    print("Validando certificado…")
    try:
        info = validate_certificate(pfx_path, pfx_password)
    except ValueError as e:
        print(f"  ERROR: Certificado invalido o contrasena incorrecta: {e}")
        return False

    print(f"  Sujeto: {info.subject}")
    if info.ruc:
        print(f"  RUC: {info.ruc}")
    print(f"  Valido hasta: {info.not_after}")
    if not info.rsa:
        print("  ERROR: SUNAT solo acepta certificados con clave RSA")
        return False
    print("  Certificado valido" if info.valid else "  AVISO: Certificado expirado")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)

    print()
    print("Donde desea guardar la contrasena?")
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Llavero del sistema (recomendado)"))
    options.append(("2", "Archivo .env en el directorio de configuracion"))
    options.append(("3", "No guardar (definir manualmente)"))
    for num, label in options:
        print(f"  {num}. {label}")

    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Opcion [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1" and _set_keyring_password(KEYRING_CERT_USERNAME, pfx_password):
        print("  Contrasena guardada en el llavero del sistema.")
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
    elif choice in ("1", "2"):
        _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
        print(f"  Contrasena guardada en {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password(KEYRING_CERT_USERNAME)
    else:
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        _delete_keyring_password(KEYRING_CERT_USERNAME)
        print("  Defina CERT_PFX_PASSWORD en su shell o .env antes de emitir.")
    return True


def _init_config() -> int:
    """Copy bundled templates to the user's config/data directories."""
    from facturador.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("facturador") / "templates"

    (config_dir / "documents").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for rel in TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  ya existe: {dest}")
            continue
        dest.write_bytes((templates / rel).read_bytes())
        print(f"  creado: {dest}")
        copied += 1

    print()
    print(f"Configuracion: {config_dir}")
    print(f"Datos:         {data_dir}")

    try:
        answer = input("\nDesea configurar el certificado digital ahora? [S/n]: ").strip().lower()
        if answer in ("", "s", "si", "y", "yes"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    if copied:
        print()
        print("Siguientes pasos:")
        print(f"  1. cp {config_dir / 'issuer.yaml.example'} {config_dir / 'issuer.yaml'}")
        print("  2. Edite issuer.yaml con los datos de su RUC")
        print(f"  3. facturador emit {config_dir / 'documents' / 'factura.yaml.example'}")
    return 0


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _config_error(description: str) -> dict:
    return {"status": "error", "stage": "config", "code": "CONFIG", "description": description}


def _cmd_emit(args: argparse.Namespace) -> int:
    from facturador.config import load_settings
    from facturador.models.receipt import ReceiptStatus
    from facturador.services.cdr_reader import CodeComparison
    from facturador.services.emission import emit, load_document, prepare, save_xml
    from facturador.services.exceptions import FacturadorError

    try:
        settings = load_settings(args.env)
    except KeyError as exc:
        _print_json(_config_error(f"Falta la variable de configuracion {exc}"))
        return 2
    except ValueError as exc:
        _print_json(_config_error(str(exc)))
        return 2

    try:
        document = load_document(Path(args.file))
        if args.dry_run:
            prepared = prepare(document, settings)
            path = save_xml(prepared, settings)
            _print_json({
                "status": "prepared",
                "document_key": prepared.key,
                "digest_value": prepared.signed.digest_value,
                "xml_path": path,
            })
            return 0
        mode = CodeComparison.LEXICAL if args.lexical_codes else CodeComparison.NUMERIC
        result = emit(document, settings, mode)
    except FacturadorError as exc:
        _print_json(exc.to_dict())
        return 1
    except (OSError, yaml.YAMLError) as exc:
        _print_json({"status": "error", "stage": "input", "code": "INPUT", "description": str(exc)})
        return 2

    _print_json(result.to_dict())
    return 0 if result.status in (ReceiptStatus.APPROVED, ReceiptStatus.OBSERVED) else 1


def _cmd_cert(args: argparse.Namespace) -> int:
    from facturador.config import get_cert_password, get_cert_path
    from facturador.utils.certificate import validate_certificate

    try:
        path, password = get_cert_path(), get_cert_password()
    except KeyError as exc:
        _print_json(_config_error(f"Falta la variable de configuracion {exc}"))
        return 2
    try:
        info = validate_certificate(path, password)
    except (OSError, ValueError) as exc:
        _print_json({"status": "error", "stage": "signature", "code": "CERTIFICATE", "description": str(exc)})
        return 1

    _print_json({
        "subject": info.subject,
        "issuer": info.issuer,
        "serial": str(info.serial),
        "not_before": info.not_before.isoformat(),
        "not_after": info.not_after.isoformat(),
        "valid": info.valid,
        "rsa": info.rsa,
        "ruc": info.ruc,
    })
    return 0 if info.valid and info.rsa else 1


def _cmd_ledger(args: argparse.Namespace) -> int:
    from facturador.config import get_data_dir
    from facturador.utils import ledger

    ledger_dir = get_data_dir() / args.env
    if args.action == "clear":
        if not args.key:
            print("Indique la clave a liberar (RUC-TT-SERIE-NUM)", file=sys.stderr)
            return 2
        removed = ledger.clear_entry(args.key, ledger_dir)
        _print_json({"document_key": args.key, "cleared": removed})
        return 0 if removed else 1
    _print_json({"entries": ledger.list_entries(ledger_dir, state=args.state)})
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facturador",
        description="Emision de facturas y boletas electronicas SUNAT (UBL 2.1)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Crear archivos de configuracion de ejemplo")

    emit_p = sub.add_parser("emit", help="Firmar y enviar un comprobante")
    emit_p.add_argument("file", help="Comprobante en YAML o JSON")
    emit_p.add_argument("--env", default="beta", help="beta | produccion (default: beta)")
    emit_p.add_argument("--dry-run", action="store_true", help="Solo firmar y guardar el XML")
    emit_p.add_argument(
        "--lexical-codes",
        action="store_true",
        help="Comparar ResponseCode como texto (compatibilidad)",
    )

    sub.add_parser("cert", help="Validar el certificado configurado")

    ledger_p = sub.add_parser("ledger", help="Consultar o liberar envios registrados")
    ledger_p.add_argument("action", choices=["list", "clear"], nargs="?", default="list")
    ledger_p.add_argument("key", nargs="?")
    ledger_p.add_argument("--env", default="beta")
    ledger_p.add_argument("--state", choices=["sent", "acknowledged"])
    return parser


def _configure_logging() -> None:
    level = os.environ.get("FACTURADOR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for the facturador CLI."""
    _configure_logging()
    args = _build_parser().parse_args(argv)
    handlers = {
        "init": lambda _: _init_config(),
        "emit": _cmd_emit,
        "cert": _cmd_cert,
        "ledger": _cmd_ledger,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
