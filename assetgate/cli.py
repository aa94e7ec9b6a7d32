#!/usr/bin/env python3
"""
assetgate CLI

Operator commands for inspecting configuration, validating payloads and
reading the audit trail of a file-backed store.

Usage:
    assetgate <command> [subcommand] [options]

Commands:
    config      Configuration management
    schema      Validate oracle payloads and asset batches
    provenance  Compute the provenance hash of an asset batch
    audit       List and verify audit entries
    token       Inspect token records
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from assetgate import __version__
from assetgate.core import load_json, load_yaml
from assetgate.observability import Layer, get_logger

logger = get_logger("cli", Layer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_text(data)


def _format_text(data: Any) -> str:
    if isinstance(data, dict):
        lines = []
        for k, v in data.items():
            if isinstance(v, (dict, list)):
                v = json.dumps(v, default=str)
            lines.append(f"{k}: {v}")
        return "\n".join(lines)
    if isinstance(data, list):
        return "\n".join(_format_text(item) for item in data)
    return str(data)


def _read_document(path: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise CLIError(f"File not found: {p}")
    try:
        if p.suffix in (".yaml", ".yml"):
            return load_yaml(p)
        return load_json(p)
    except (ValueError, yaml.YAMLError) as e:
        raise CLIError(f"Cannot parse {p}: {e}") from e


class AssetGateCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="assetgate",
            description="Asset verification and tokenization gate",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"assetgate {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (default: search the standard locations)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_config_commands()
        self._register_schema_commands()
        self._register_provenance_command()
        self._register_audit_commands()
        self._register_token_commands()

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Dotted path, e.g. oracle.max_retries")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_schema_commands(self) -> None:
        schema = self.subparsers.add_parser("schema", help="Payload schema validation")
        schema_sub = schema.add_subparsers(dest="subcommand")

        validate = schema_sub.add_parser("validate", help="Validate a JSON or YAML document")
        validate.add_argument("file", help="Document to validate")
        validate.add_argument(
            "--kind", "-k",
            choices=["oracle-payload", "asset-batch"],
            default="oracle-payload",
            help="Schema to validate against",
        )
        validate.add_argument("--asset-id", help="Expected assetId for oracle payloads")

    def _register_provenance_command(self) -> None:
        provenance = self.subparsers.add_parser("provenance", help="Compute an asset batch provenance hash")
        provenance.add_argument("file", help="Asset batch document")
        provenance.add_argument("--deal", help="Deal id; also prints the token metadata")

    def _register_audit_commands(self) -> None:
        audit = self.subparsers.add_parser("audit", help="Audit trail")
        audit_sub = audit.add_subparsers(dest="subcommand")

        list_cmd = audit_sub.add_parser("list", help="List audit entries")
        list_cmd.add_argument("--store", "-s", required=True, help="JSON document store file")
        list_cmd.add_argument("--kind", choices=["verification", "mint", "revoke"], help="Entry kind")
        list_cmd.add_argument("--subject", help="Asset or token id")
        list_cmd.add_argument("--actor", help="Recorded actor")
        list_cmd.add_argument("--limit", "-n", type=int, help="Maximum entries")

        verify = audit_sub.add_parser("verify", help="Verify the audit hash chain")
        verify.add_argument("--store", "-s", required=True, help="JSON document store file")

    def _register_token_commands(self) -> None:
        token = self.subparsers.add_parser("token", help="Token records")
        token_sub = token.add_subparsers(dest="subcommand")

        show = token_sub.add_parser("show", help="Show a token record")
        show.add_argument("token_id", help="Token id")
        show.add_argument("--store", "-s", required=True, help="JSON document store file")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            if isinstance(result, dict) and result.get("valid") is False:
                return 1
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            logger.error("Command failed", command=parsed.command, error=str(e), exc_info=True)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    def _config_manager(self, args: argparse.Namespace):
        from assetgate.config import ConfigManager
        from assetgate.observability import configure_logging
        mgr = ConfigManager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        configure_logging(mgr.get("observability.log_level"), mgr.get("observability.log_format"))
        return mgr

    def _audit_store(self, args: argparse.Namespace):
        from assetgate.audit import AuditTrailStore
        from assetgate.store import JsonFileDocumentStore

        path = Path(args.store)
        if not path.exists():
            raise CLIError(f"Store not found: {path}")
        mgr = self._config_manager(args)
        return AuditTrailStore(JsonFileDocumentStore(path), signing_key=mgr.get("audit.signing_key"))

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = self._config_manager(args)
        value = mgr.get(args.path)
        if mgr.is_secret(args.path) and value:
            from assetgate.config import SECRET_MASK
            value = SECRET_MASK
        return {"path": args.path, "value": value}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._config_manager(args).config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._config_manager(args).validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return self._config_manager(args).export_schema()

    # Schema handlers
    def _handle_schema_validate(self, args: argparse.Namespace) -> Any:
        from assetgate.schema import validate_against_schema

        doc = _read_document(args.file)
        errors = validate_against_schema(doc, args.kind)
        if (
            not errors
            and args.kind == "oracle-payload"
            and args.asset_id
            and doc.get("assetId") != args.asset_id
        ):
            errors.append(f"$.assetId: payload describes '{doc.get('assetId')}', expected '{args.asset_id}'")
        return {"file": args.file, "kind": args.kind, "valid": not errors, "errors": errors}

    # Provenance handler
    def _handle_provenance(self, args: argparse.Namespace) -> Any:
        from assetgate.models import AssetBatch
        from assetgate.schema import validate_asset_batch
        from assetgate.tokenization import build_metadata, provenance_hash

        batch = AssetBatch.from_dict(validate_asset_batch(_read_document(args.file)))
        digest = provenance_hash(batch)
        result = {"assetId": batch.asset_id, "assetType": batch.asset_type.value, "provenanceHash": digest}
        if args.deal:
            result["metadata"] = build_metadata(batch, args.deal, digest)
        return result

    # Audit handlers
    def _handle_audit_list(self, args: argparse.Namespace) -> Any:
        from assetgate.models import AuditKind

        audit = self._audit_store(args)
        entries = audit.query(
            kind=AuditKind(args.kind) if args.kind else None,
            subject_id=args.subject,
            actor=args.actor,
            limit=args.limit,
        )
        return {"entries": [e.to_dict() for e in entries], "count": len(entries)}

    def _handle_audit_verify(self, args: argparse.Namespace) -> Any:
        audit = self._audit_store(args)
        problems = audit.verify_chain()
        return {
            "valid": not problems,
            "entries": len(audit.query()),
            "signed": audit.signs_entries,
            "problems": problems,
        }

    # Token handlers
    def _handle_token_show(self, args: argparse.Namespace) -> Any:
        audit = self._audit_store(args)
        record = audit.get_token(args.token_id)
        if record is None:
            raise CLIError(f"Token not found: {args.token_id}")
        return {"token": record.to_dict(), "mapping": audit.mapping(args.token_id)}


def main() -> int:
    """CLI entry point."""
    cli = AssetGateCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
