#!/usr/bin/env python3
"""
Signature Changing Hash - Command Line Interface

Usage:
    sch keygen --out <key.pem>                      Generate a signer key (0600 PEM)
    sch address --key-file <key.pem>                Print the signer address of a key file
    sch window-start --now T --reference T          Compute a window boundary
    sch digest --subject A --chain-id N --nonce N --window-start T
                                                    Compute an authorization digest offline
    sch sign --digest <hex> [--key-file <key.pem>]  Sign a digest (honours SIGNER_MODE)
    sch recover --digest <hex> --signature <hex>    Recover the signer address
    sch state --state-path <journal.jsonl>          Summarize an authorization journal
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict

from sch_gateway.crypto import recover_signer
from sch_gateway.digest import authorization_digest, checksum_address, coerce_digest
from sch_gateway.errors import SCH_E_CONFIG, SCH_E_STATE_MISMATCH, SCHError, sch_error
from sch_gateway.journal import AuthorizationJournal
from sch_gateway.keys import address_from_private_key, generate_key_file, load_private_key
from sch_gateway.signing import build_signer_from_env, signer_mode_from_env
from sch_gateway.window import WINDOW_SECONDS, window_start

logger = logging.getLogger("sch_gateway.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logging.getLogger("sch_gateway").setLevel(level)


def _int(value: str) -> int:
    """argparse type: decimal or 0x-prefixed integer."""
    try:
        return int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")


def _emit(args, payload: Dict[str, Any], text: str) -> None:
    if getattr(args, "json", False):
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(text)


def cmd_keygen(args):
    address = generate_key_file(args.out)
    _emit(args, {"address": address, "key_file": args.out}, address)
    return 0


def cmd_address(args):
    key = load_private_key(file_path=args.key_file)
    if key is None:
        raise sch_error(SCH_E_CONFIG, "no signer key configured (use --key-file or SCH_SIGNER_PRIVATE_KEY)")
    address = address_from_private_key(key)
    _emit(args, {"address": address}, address)
    return 0


def cmd_window_start(args):
    w = window_start(args.now, args.reference, WINDOW_SECONDS)
    _emit(args, {"window_start": w, "window_end": w + WINDOW_SECONDS}, str(w))
    return 0


def cmd_digest(args):
    d = authorization_digest(args.subject, args.chain_id, args.nonce, args.window_start)
    payload = {
        "digest": "0x" + d.hex(),
        "subject": checksum_address(args.subject, "subject"),
        "chain_id": args.chain_id,
        "nonce": args.nonce,
        "window_start": args.window_start,
    }
    _emit(args, payload, payload["digest"])
    return 0


def cmd_sign(args):
    digest = coerce_digest(args.digest)
    base: Any = load_private_key(file_path=args.key_file)
    if base is None and args.address and signer_mode_from_env() == "external":
        # External mode only needs the expected address.
        base = args.address
    if base is None:
        raise sch_error(SCH_E_CONFIG, "no signer key configured (use --key-file, SCH_SIGNER_PRIVATE_KEY or --address with SIGNER_MODE=external)")
    signer = build_signer_from_env(base)
    sig = signer.sign_digest(digest)
    logger.debug("Signed digest %s as %s", "0x" + digest.hex(), signer.address)
    _emit(args, {"signature": "0x" + sig.hex(), "signer": signer.address}, "0x" + sig.hex())
    return 0


def cmd_recover(args):
    address = recover_signer(coerce_digest(args.digest), args.signature)
    _emit(args, {"signer": address}, address)
    return 0


def cmd_state(args):
    journal = AuthorizationJournal(args.state_path)
    contents = journal.load()
    g = contents.genesis
    if g is None:
        raise sch_error(SCH_E_STATE_MISMATCH, "journal has no genesis record", path=args.state_path)
    last = contents.executions[-1] if contents.executions else None
    payload = {
        "signer": g.signer,
        "chain_id": g.chain_id,
        "subject": g.subject,
        "nonce": last.nonce if last else 0,
        "reference_timestamp": last.reference_timestamp if last else g.reference_timestamp,
        "consumed_count": len(contents.executions),
        "window_seconds": WINDOW_SECONDS,
    }
    text = "\n".join(f"{k:20} {v}" for k, v in payload.items())
    _emit(args, payload, text)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Signature Changing Hash - time-windowed single-signer authorization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a signer key file")
    keygen_parser.add_argument("--out", required=True, help="Path of the new key file (must not exist)")
    keygen_parser.add_argument("--json", action="store_true", help="Output as JSON")

    address_parser = subparsers.add_parser("address", help="Print the address of a signer key")
    address_parser.add_argument("--key-file", default=None, help="Signer key file (PEM or hex)")
    address_parser.add_argument("--json", action="store_true", help="Output as JSON")

    ws_parser = subparsers.add_parser("window-start", help="Compute a window boundary")
    ws_parser.add_argument("--now", type=_int, required=True, help="Current time (seconds)")
    ws_parser.add_argument("--reference", type=_int, required=True, help="Reference timestamp (seconds)")
    ws_parser.add_argument("--json", action="store_true", help="Output as JSON")

    digest_parser = subparsers.add_parser("digest", help="Compute an authorization digest")
    digest_parser.add_argument("--subject", required=True, help="Subject address")
    digest_parser.add_argument("--chain-id", type=_int, required=True, help="Chain identifier")
    digest_parser.add_argument("--nonce", type=_int, required=True, help="Nonce")
    digest_parser.add_argument("--window-start", type=_int, required=True, help="Window boundary")
    digest_parser.add_argument("--json", action="store_true", help="Output as JSON")

    sign_parser = subparsers.add_parser("sign", help="Sign a digest as the designated signer")
    sign_parser.add_argument("--digest", required=True, help="Digest (0x-hex, 32 bytes)")
    sign_parser.add_argument("--key-file", default=None, help="Signer key file (PEM or hex)")
    sign_parser.add_argument("--address", default=None, help="Expected signer address (SIGNER_MODE=external)")
    sign_parser.add_argument("--json", action="store_true", help="Output as JSON")

    recover_parser = subparsers.add_parser("recover", help="Recover the signer of a signature")
    recover_parser.add_argument("--digest", required=True, help="Digest (0x-hex, 32 bytes)")
    recover_parser.add_argument("--signature", required=True, help="Signature (0x-hex, 65 bytes)")
    recover_parser.add_argument("--json", action="store_true", help="Output as JSON")

    state_parser = subparsers.add_parser("state", help="Summarize an authorization journal")
    state_parser.add_argument("--state-path", required=True, help="Journal path")
    state_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 2

    commands = {
        "keygen": cmd_keygen,
        "address": cmd_address,
        "window-start": cmd_window_start,
        "digest": cmd_digest,
        "sign": cmd_sign,
        "recover": cmd_recover,
        "state": cmd_state,
    }

    try:
        return commands[args.command](args)
    except SCHError as e:
        print(json.dumps(e.as_dict(), sort_keys=True), file=sys.stderr)
        return 1
    except (OSError, RuntimeError, TypeError, ValueError) as e:
        print(json.dumps({"code": "SCH_E_CLI", "message": str(e)}), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
