#!/usr/bin/env python3
"""packwright CLI: a thin surface over `packwright.pack.manager.Engine`.

Subcommands:
- packwright plan              → Plan a pack against a target (no mutation)
- packwright apply             → Apply a pack and write a receipt
- packwright update            → Update an installed pack (risk-gated)
- packwright remove            → Remove an installed pack's artifacts
- packwright status            → List installed packs and drifted artifacts
- packwright verify            → Verify the installed receipt and artifact hashes
- packwright receipts list     → List receipts from the notes ref
- packwright receipts export   → Export receipts as JSON or CSV
- packwright keys generate     → Generate the Ed25519 receipt signing key pair
- packwright pack sign         → Write a SIGNATURE file for a pack
- packwright pack verify       → Verify a pack's SIGNATURE file
- packwright policy validate   → Validate a policy JSON file

Results are printed as JSON on stdout; diagnostics go to stderr.

Exit codes:
- 0: success
- 1: generic error (failed step, invalid receipt, ...)
- 2: policy violation
- 3: conflict or blocking update risk (retry with --force)
- 4: input validation failure
- 5: abi mismatch
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from packwright.config import EngineConfig, load_engine_config
from packwright.core.time import format_utc_z, utc_now
from packwright.log import setup_logging
from packwright.pack.capabilities import NonInteractivePrompt, SubprocessExec
from packwright.pack.errors import EXIT_ERROR, EXIT_OK, PackError
from packwright.pack.keys import KeyStore, generate_keypair
from packwright.pack.manager import Engine, EngineContext, exit_code_for
from packwright.pack.policy import Policy, PolicyConfig, load_policy_file, validate_policy_configuration
from packwright.pack.signature import ALGORITHMS, sign_pack, verify_pack_signature


def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False, default=str))


def _parse_inputs(args: argparse.Namespace) -> dict[str, Any]:
    out: dict[str, Any] = {}
    inputs_file = getattr(args, "inputs_file", None)
    if inputs_file:
        obj = json.loads(Path(inputs_file).read_text(encoding="utf-8", errors="strict"))
        if not isinstance(obj, dict):
            raise ValueError(f"inputs file must hold a JSON object: {inputs_file}")
        out.update(obj)
    for item in getattr(args, "input", None) or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"--input expects KEY=VALUE, got {item!r}")
        out[key.strip()] = value
    return out


def _policy(args: argparse.Namespace) -> Policy:
    if getattr(args, "policy_file", None):
        return Policy(load_policy_file(Path(args.policy_file)))
    profile = getattr(args, "profile", None)
    if profile == "restrictive":
        return Policy(PolicyConfig.restrictive())
    if profile == "permissive":
        return Policy(PolicyConfig.permissive())
    return Policy()


def _engine(args: argparse.Namespace, target: Path) -> Engine:
    config = load_engine_config(target)
    if getattr(args, "sign", False):
        config = replace(config, sign_receipts=True)
    if getattr(args, "key_dir", None):
        config = replace(config, key_dir=args.key_dir)
    if getattr(args, "continue_on_error", False):
        config = replace(config, continue_on_error=True)
    context = EngineContext(
        prompt=NonInteractivePrompt(),
        exec_capability=SubprocessExec() if getattr(args, "allow_exec", False) else None,
    )
    return Engine(config, _policy(args), context)


def _run(prefix: str, args: argparse.Namespace, fn: Any, *, mutating: bool = False) -> int:
    target = Path(getattr(args, "target", ".") or ".").resolve()
    log_dir = target / EngineConfig().engine_dir if mutating and target.is_dir() else None
    setup_logging(log_dir, verbose=args.verbose)
    try:
        engine = _engine(args, target)
        result = fn(engine, target)
    except (OSError, ValueError) as e:
        print(f"[packwright {prefix}] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    _emit(result.to_dict())
    code = exit_code_for(result)
    error = getattr(result, "error", None)
    if isinstance(error, dict):
        print(f"[packwright {prefix}] ERROR: {error.get('kind')}: {error.get('message')}", file=sys.stderr)
    elif code != EXIT_OK:
        print(f"[packwright {prefix}] FAIL: status={result.status}", file=sys.stderr)
    return code


def cmd_plan(args: argparse.Namespace) -> int:
    def go(engine: Engine, target: Path) -> Any:
        return engine.plan(Path(args.pack), target, _parse_inputs(args), mode=args.mode, approved=args.approved)

    return _run("plan", args, go)


def cmd_apply(args: argparse.Namespace) -> int:
    def go(engine: Engine, target: Path) -> Any:
        return engine.apply(Path(args.pack), target, _parse_inputs(args), mode=args.mode, approved=args.approved)

    return _run("apply", args, go, mutating=True)


def cmd_update(args: argparse.Namespace) -> int:
    def go(engine: Engine, target: Path) -> Any:
        return engine.update(
            Path(args.pack), target, _parse_inputs(args), force=args.force, mode=args.mode, approved=args.approved
        )

    return _run("update", args, go, mutating=True)


def cmd_remove(args: argparse.Namespace) -> int:
    return _run("remove", args, lambda engine, target: engine.remove(args.pack_id, target, force=args.force), mutating=True)


def cmd_status(args: argparse.Namespace) -> int:
    return _run("status", args, lambda engine, target: engine.status(target))


def cmd_verify(args: argparse.Namespace) -> int:
    return _run("verify", args, lambda engine, target: engine.verify(args.pack_id, target))


def cmd_receipts(args: argparse.Namespace) -> int:
    prefix = f"receipts {args.receipts_command}"
    target = Path(args.target).resolve()
    setup_logging(verbose=args.verbose)
    try:
        store = _engine(args, target).store(target)
        if args.receipts_command == "export":
            sys.stdout.write(store.export(args.format))
            return EXIT_OK
        if args.status:
            receipts = store.list_by_status(args.status)
        elif args.operation:
            receipts = store.list_by_operation(args.operation)
        else:
            receipts = store.read(args.pack_id, latest=False)
        if args.pack_id:
            receipts = [r for r in receipts if r.get("id") == args.pack_id]
    except (OSError, ValueError) as e:
        print(f"[packwright {prefix}] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    _emit(receipts)
    return EXIT_OK


def cmd_keys_generate(args: argparse.Namespace) -> int:
    key_dir = Path(args.key_dir).expanduser() if args.key_dir else EngineConfig().resolved_key_dir
    if KeyStore(key_dir).has_keys():
        print(f"[packwright keys generate] keys already present in {key_dir}", file=sys.stderr)
        return EXIT_OK
    try:
        priv, pub = generate_keypair(key_dir)
    except (OSError, PackError) as e:
        print(f"[packwright keys generate] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    print(f"[packwright keys generate] wrote: {priv}", file=sys.stderr)
    print(f"[packwright keys generate] wrote: {pub}", file=sys.stderr)
    return EXIT_OK


def cmd_pack_sign(args: argparse.Namespace) -> int:
    pack_root = Path(args.input)
    try:
        blob = Path(args.key).read_bytes()
        sig = sign_pack(
            pack_root,
            blob,
            signer=args.signer,
            algorithm=args.algorithm,
            timestamp=format_utc_z(utc_now()),
        )
    except (OSError, ValueError, PackError) as e:
        print(f"[packwright pack sign] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    _emit(sig)
    print(f"[packwright pack sign] signed: {pack_root}", file=sys.stderr)
    return EXIT_OK


def cmd_pack_verify(args: argparse.Namespace) -> int:
    pack_root = Path(args.input)
    try:
        blob = Path(args.key).read_bytes() if args.key else None
    except OSError as e:
        print(f"[packwright pack verify] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    check = verify_pack_signature(pack_root, blob)
    _emit(check.to_dict())
    if not check.valid:
        print(f"[packwright pack verify] FAIL: {'; '.join(check.errors)}", file=sys.stderr)
        return EXIT_ERROR
    print("[packwright pack verify] PASS", file=sys.stderr)
    return EXIT_OK


def cmd_policy_validate(args: argparse.Namespace) -> int:
    try:
        config = load_policy_file(Path(args.policy_file))
    except (OSError, ValueError) as e:
        print(f"[packwright policy validate] ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    report = validate_policy_configuration(config)
    _emit(report)
    for w in report.get("warnings", []):
        print(f"[packwright policy validate] WARNING: {w}", file=sys.stderr)
    return EXIT_OK if report.get("valid") else EXIT_ERROR


def _add_pack_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--pack", required=True, help="Pack directory (holds pack.json)")
    p.add_argument("--target", default=".", help="Target tree (default: .)")
    p.add_argument("--input", action="append", default=[], metavar="KEY=VALUE", help="Input value (repeatable)")
    p.add_argument("--inputs-file", help="JSON object of input values")
    p.add_argument("--mode", choices=("existing-tree", "fresh-tree"), help="Override mode detection")
    p.add_argument("--approved", action="store_true", help="Caller approval for policies that require it")
    p.add_argument("--policy", dest="policy_file", help="Policy JSON file")
    p.add_argument("--profile", choices=("default", "restrictive", "permissive"), help="Canned policy profile")
    p.add_argument("--sign", action="store_true", help="Sign the receipt with the Ed25519 key")
    p.add_argument("--key-dir", help="Receipt signing key directory")
    p.add_argument("--allow-exec", action="store_true", help="Allow post-install run actions")
    p.add_argument("--continue-on-error", action="store_true", help="Keep going after a failed step")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="packwright",
        description="packwright: declarative pack lifecycle engine",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug diagnostics on stderr")
    subparsers = parser.add_subparsers(dest="command", help="Subcommand")

    p_plan = subparsers.add_parser("plan", help="Plan a pack against a target without mutating it")
    _add_pack_args(p_plan)
    p_plan.set_defaults(func=cmd_plan)

    p_apply = subparsers.add_parser("apply", help="Apply a pack to a target")
    _add_pack_args(p_apply)
    p_apply.set_defaults(func=cmd_apply)

    p_update = subparsers.add_parser("update", help="Update an installed pack")
    _add_pack_args(p_update)
    p_update.add_argument("--force", action="store_true", help="Proceed despite high-severity risks")
    p_update.set_defaults(func=cmd_update)

    p_remove = subparsers.add_parser("remove", help="Remove an installed pack")
    p_remove.add_argument("--id", dest="pack_id", required=True, help="Pack id")
    p_remove.add_argument("--target", default=".", help="Target tree (default: .)")
    p_remove.add_argument("--force", action="store_true", help="Remove artifacts even if modified")
    p_remove.add_argument("--policy", dest="policy_file", help="Policy JSON file")
    p_remove.set_defaults(func=cmd_remove)

    p_status = subparsers.add_parser("status", help="List installed packs")
    p_status.add_argument("--target", default=".", help="Target tree (default: .)")
    p_status.set_defaults(func=cmd_status)

    p_verify = subparsers.add_parser("verify", help="Verify an installed pack's receipt and artifacts")
    p_verify.add_argument("--id", dest="pack_id", required=True, help="Pack id")
    p_verify.add_argument("--target", default=".", help="Target tree (default: .)")
    p_verify.add_argument("--key-dir", help="Receipt signing key directory")
    p_verify.set_defaults(func=cmd_verify)

    p_receipts = subparsers.add_parser("receipts", help="Receipt queries")
    receipts_subs = p_receipts.add_subparsers(dest="receipts_command", help="Receipts subcommand")
    p_rlist = receipts_subs.add_parser("list", help="List receipts, newest first")
    p_rlist.add_argument("--target", default=".", help="Target tree (default: .)")
    p_rlist.add_argument("--id", dest="pack_id", help="Only receipts of this pack")
    p_rlist.add_argument("--status", help="Filter by status")
    p_rlist.add_argument("--operation", help="Filter by operation")
    p_rexport = receipts_subs.add_parser("export", help="Export receipts")
    p_rexport.add_argument("--target", default=".", help="Target tree (default: .)")
    p_rexport.add_argument("--format", choices=("json", "csv"), default="json", help="Output format")

    p_keys = subparsers.add_parser("keys", help="Receipt signing keys")
    keys_subs = p_keys.add_subparsers(dest="keys_command", help="Keys subcommand")
    p_kgen = keys_subs.add_parser("generate", help="Generate the Ed25519 key pair")
    p_kgen.add_argument("--key-dir", help="Key directory (default: ~/.packwright/keys)")

    p_pack = subparsers.add_parser("pack", help="Pack signature commands")
    pack_subs = p_pack.add_subparsers(dest="pack_command", help="Pack subcommand")
    p_psign = pack_subs.add_parser("sign", help="Write SIGNATURE for a pack")
    p_psign.add_argument("--in", dest="input", required=True, help="Pack directory")
    p_psign.add_argument("--key", required=True, help="Private key file (hex seed or PEM)")
    p_psign.add_argument("--signer", default="unknown", help="Signer identity recorded in SIGNATURE")
    p_psign.add_argument("--algorithm", choices=ALGORITHMS, default="Ed25519", help="Signature algorithm")
    p_pverify = pack_subs.add_parser("verify", help="Verify a pack's SIGNATURE")
    p_pverify.add_argument("--in", dest="input", required=True, help="Pack directory")
    p_pverify.add_argument("--key", help="Public key file (hex or PEM)")

    p_policy = subparsers.add_parser("policy", help="Policy helpers")
    policy_subs = p_policy.add_subparsers(dest="policy_command", help="Policy subcommand")
    p_pvalidate = policy_subs.add_parser("validate", help="Validate a policy JSON file")
    p_pvalidate.add_argument("--policy", dest="policy_file", required=True, help="Policy JSON file")

    args = parser.parse_args(argv)

    if args.command in ("plan", "apply", "update", "remove", "status", "verify"):
        return int(args.func(args))
    elif args.command == "receipts":
        if args.receipts_command in ("list", "export"):
            return cmd_receipts(args)
        p_receipts.print_help()
        return EXIT_ERROR
    elif args.command == "keys":
        if args.keys_command == "generate":
            return cmd_keys_generate(args)
        p_keys.print_help()
        return EXIT_ERROR
    elif args.command == "pack":
        if args.pack_command == "sign":
            return cmd_pack_sign(args)
        elif args.pack_command == "verify":
            return cmd_pack_verify(args)
        p_pack.print_help()
        return EXIT_ERROR
    elif args.command == "policy":
        if args.policy_command == "validate":
            return cmd_policy_validate(args)
        p_policy.print_help()
        return EXIT_ERROR
    else:
        parser.print_help()
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
