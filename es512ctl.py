#!/usr/bin/env python3
"""
es512ctl.py — ES512 JWS signing for JSON request payloads.

This script provides:
- base64url encoding per RFC 7515 section 2 (no padding)
- ES512 signing (ECDSA P-521 + SHA-512) with fixed-width raw r||s signatures
- JWS Compact Serialization and the detached-content variant (RFC 7515 Appendix F)
- A small client that submits a signed request with the detached JWS as a header

Notes:
- Signing is randomized: two signatures over the same input differ.
- It does NOT generate keys or verify signatures.
"""

from __future__ import annotations

import argparse
import base64
import datetime as dt
import hashlib
import json
import math
import sys
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from jsonschema import Draft202012Validator, FormatChecker
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'jsonschema'. Install with: python3 -m pip install -e ."
    ) from e

try:
    import jcs
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'jcs'. Install with: python3 -m pip install -e ."
    ) from e

try:
    import requests
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'requests'. Install with: python3 -m pip install -e ."
    ) from e

try:
    from cryptography.exceptions import UnsupportedAlgorithm
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'cryptography'. Install with: python3 -m pip install -e ."
    ) from e


ES512_ALG = "ES512"
# ceil(521 / 8)
ES512_COORDINATE_SIZE = 66
ES512_SIGNATURE_SIZE = 2 * ES512_COORDINATE_SIZE

DEFAULT_ENDPOINT = "https://payouts.t7r.co/v1/test"
DEFAULT_SIGNATURE_HEADER = "X-TL-Signature"
DEFAULT_TIMEOUT = 30.0


# ---------------------------
# Errors
# ---------------------------

class Es512Error(Exception):
    """Base class for every failure surfaced by the signing pipeline."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class CurveMismatch(Es512Error):
    pass


class KeyParseError(Es512Error):
    pass


class PayloadParseError(Es512Error):
    pass


class ConfigError(Es512Error):
    pass


class SubmissionError(Es512Error):
    pass


def error_chain(err: BaseException) -> list[str]:
    """
    Return the messages of ``err`` and each chained cause, outermost first.
    """
    messages = []
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        messages.append(str(current) or type(current).__name__)
        if current.__cause__ is not None or current.__suppress_context__:
            current = current.__cause__
        else:
            current = current.__context__
    return messages


# ---------------------------
# Utilities
# ---------------------------

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def now_rfc3339() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def dump_json(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=False) + "\n"


# ---------------------------
# Payload and key loading
# ---------------------------

def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"Number {text} is out of range")
    return value


def parse_payload(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError as e:
        raise PayloadParseError("Failed to parse the request payload as JSON.") from e


def serialize_payload(value: Any, *, canonical: bool = False) -> str:
    """
    Serialize ``value`` once into the exact string that gets signed and sent.

    The default is compact JSON that keeps the key order of ``value``;
    ``canonical`` switches to RFC 8785 (JCS) output.
    """
    try:
        compact = json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        if canonical:
            out = jcs.canonicalize(value)
            return out.decode("utf-8") if isinstance(out, bytes) else out
        return compact
    except (TypeError, ValueError) as e:
        raise PayloadParseError("Failed to serialize the request payload as JSON.") from e


def load_payload(path: Path) -> Any:
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        raise PayloadParseError("Failed to read the request payload file.") from e
    return parse_payload(raw)


def load_private_key(raw_pem: bytes, password: Optional[bytes] = None) -> ec.EllipticCurvePrivateKey:
    """
    Parse a PEM private key and require it to be an EC key.

    The curve is not checked here; ``sign_es512`` rejects anything but P-521.
    """
    try:
        key = serialization.load_pem_private_key(raw_pem, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyParseError("Failed to parse the private key as PEM.") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise KeyParseError("The private key must be an Elliptic Curve key.")
    check_key(key)
    return key


def check_key(key: ec.EllipticCurvePrivateKey) -> None:
    """
    Require the private scalar to match the public point carried with the key.
    """
    derived = ec.derive_private_key(key.private_numbers().private_value, key.curve)
    if derived.public_key().public_numbers() != key.public_key().public_numbers():
        raise KeyParseError("Key verification failed: the public point does not match the private scalar.")


def load_private_key_file(path: Path, password: Optional[bytes] = None) -> ec.EllipticCurvePrivateKey:
    try:
        raw_pem = Path(path).read_bytes()
    except OSError as e:
        raise KeyParseError("Failed to read the private key file.") from e
    return load_private_key(raw_pem, password=password)


# ---------------------------
# ES512 signing
# ---------------------------

def pad_coordinate(value: int, size: int = ES512_COORDINATE_SIZE) -> bytes:
    """
    Big-endian encode ``value`` left-padded with zero bytes to exactly ``size`` bytes.
    """
    minimal = value.to_bytes((value.bit_length() + 7) // 8, "big")
    if len(minimal) > size:
        raise AssertionError(f"ECDSA integer needs {len(minimal)} bytes, more than {size}")
    return minimal.rjust(size, b"\x00")


def sign_es512(message: bytes, key: Any) -> bytes:
    """
    Return the 132-byte raw ES512 signature (r || s) over ``message``.

    See RFC 7515 appendix A.4. Raises CurveMismatch unless ``key`` is a P-521 private key.
    """
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise CurveMismatch("ES512 requires an Elliptic Curve private key on P-521.")
    if not isinstance(key.curve, ec.SECP521R1):
        raise CurveMismatch(
            f"The underlying elliptic curve must be P-521 to sign using ES512, got {key.curve.name}."
        )

    digest = hashlib.sha512(message).digest()
    der = key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA512())))
    r, s = decode_dss_signature(der)
    return pad_coordinate(r) + pad_coordinate(s)


# ---------------------------
# JWS assembly
# ---------------------------

@dataclass(frozen=True)
class JwsHeader:
    kid: str
    alg: str = field(default=ES512_ALG, init=False)

    def to_json(self) -> str:
        # alg, then kid: these bytes are part of the signing input
        ordered = {"alg": self.alg, "kid": self.kid}
        return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)


def build_jws(header: JwsHeader, payload: str, key: Any) -> str:
    """
    Return JWS Compact Serialization: "<header>.<payload>.<signature>"

    ``payload`` is the already-serialized JSON string and is encoded as-is.
    """
    header_b64 = b64url_encode(header.to_json().encode("utf-8"))
    payload_b64 = b64url_encode(payload.encode("utf-8"))
    signing_input = (header_b64 + "." + payload_b64).encode("ascii")
    signature = sign_es512(signing_input, key)
    return header_b64 + "." + payload_b64 + "." + b64url_encode(signature)


def detach_jws(compact: str) -> str:
    """
    Drop the payload segment: "<header>..<signature>"
    """
    parts = compact.split(".")
    if len(parts) != 3:
        raise AssertionError(f"Compact JWS must have 3 segments, got {len(parts)}")
    return parts[0] + ".." + parts[2]


@dataclass(frozen=True)
class SignedPayload:
    body: str
    jws: str
    detached: str

    def to_dict(self) -> Dict[str, str]:
        return {"body": self.body, "jws": self.jws, "detached": self.detached}


def sign_payload(payload: Any, *, kid: str, key: Any, canonical: bool = False) -> SignedPayload:
    body = serialize_payload(payload, canonical=canonical)
    jws = build_jws(JwsHeader(kid=kid), body, key)
    return SignedPayload(body=body, jws=jws, detached=detach_jws(jws))


# ---------------------------
# Configuration
# ---------------------------

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["certificateId", "accessToken"],
    "additionalProperties": False,
    "properties": {
        "certificateId": {"type": "string", "format": "uuid"},
        "accessToken": {"type": "string", "minLength": 1},
        "endpoint": {"type": "string", "pattern": "^https?://"},
        "signatureHeader": {"type": "string", "minLength": 1},
        "timeout": {"type": "number", "exclusiveMinimum": 0},
    },
}


@dataclass(frozen=True)
class SignerConfig:
    certificate_id: str
    access_token: str
    endpoint: str = DEFAULT_ENDPOINT
    signature_header: str = DEFAULT_SIGNATURE_HEADER
    timeout: float = DEFAULT_TIMEOUT


def config_from_dict(obj: Any) -> SignerConfig:
    validator = Draft202012Validator(CONFIG_SCHEMA, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(obj), key=lambda e: [str(p) for p in e.path])
    if errors:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors
        )
        raise ConfigError(f"Invalid signer configuration: {details}")
    return SignerConfig(
        certificate_id=obj["certificateId"],
        access_token=obj["accessToken"],
        endpoint=obj.get("endpoint", DEFAULT_ENDPOINT),
        signature_header=obj.get("signatureHeader", DEFAULT_SIGNATURE_HEADER),
        timeout=float(obj.get("timeout", DEFAULT_TIMEOUT)),
    )


def load_config(path: Path) -> SignerConfig:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read the configuration file {path}.") from e
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration file {path}.") from e
    return config_from_dict(obj)


# ---------------------------
# Request submission
# ---------------------------

def submit_signed_request(
    signed: SignedPayload,
    config: SignerConfig,
    *,
    session: Any = None,
) -> requests.Response:
    """
    POST the signed body with the detached JWS in ``config.signature_header``.
    """
    http = session if session is not None else requests
    headers = {
        "Authorization": f"Bearer {config.access_token}",
        config.signature_header: signed.detached,
        "Content-Type": "application/json",
    }
    try:
        return http.post(
            config.endpoint,
            data=signed.body.encode("utf-8"),
            headers=headers,
            timeout=config.timeout,
        )
    except requests.RequestException as e:
        raise SubmissionError(f"Failed to send the signed request to {config.endpoint}.") from e


# ---------------------------
# Commands
# ---------------------------

def report_error(err: BaseException) -> None:
    messages = error_chain(err)
    kind = err.kind if isinstance(err, Es512Error) else type(err).__name__
    print(f"[{kind}] {messages[0]}", file=sys.stderr)
    for cause in messages[1:]:
        print(f"  caused by: {cause}", file=sys.stderr)


def cmd_sign(args: argparse.Namespace) -> int:
    payload = load_payload(Path(args.payload_filename))
    key = load_private_key_file(Path(args.private_key_filename))
    signed = sign_payload(payload, kid=str(args.certificate_id), key=key, canonical=args.canonical)

    if args.output:
        doc = dict(signed.to_dict())
        doc["kid"] = str(args.certificate_id)
        doc["signedAt"] = now_rfc3339()
        Path(args.output).parent.mkdir(parents=True, exist_ok=True)
        Path(args.output).write_text(dump_json(doc), encoding="utf-8")
        print(args.output)
        return 0

    print(f"JWS:\n{signed.jws}\n")
    # Omit the payload for a JWS with detached content
    print(f"JWS with detached content:\n{signed.detached}\n")
    return 0


def cmd_detach(args: argparse.Namespace) -> int:
    jws = args.jws.strip()
    if jws.count(".") != 2:
        raise SystemExit("Invalid JWS compact serialization: expected three '.'-separated segments")
    print(detach_jws(jws))
    return 0


def cmd_submit(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config))
    overrides = {}
    if args.certificate_id is not None:
        overrides["certificate_id"] = str(args.certificate_id)
    if args.access_token is not None:
        overrides["access_token"] = args.access_token
    if args.endpoint is not None:
        overrides["endpoint"] = args.endpoint
    if overrides:
        config = replace(config, **overrides)

    payload = load_payload(Path(args.payload_filename))
    key = load_private_key_file(Path(args.private_key_filename))
    signed = sign_payload(payload, kid=config.certificate_id, key=key, canonical=args.canonical)

    response = submit_signed_request(signed, config)
    if 200 <= response.status_code < 300:
        print(f"The request to {config.endpoint} succeeded!")
        return 0
    print(
        f"[FAIL] The request to {config.endpoint} failed with status code "
        f"{response.status_code} and body: {response.text}",
        file=sys.stderr,
    )
    return 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="es512ctl.py")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_sign = sub.add_parser("sign", help="Sign a JSON payload and print the compact and detached JWS")
    p_sign.add_argument("--payload-filename", required=True, help="Path to the JSON payload to sign")
    p_sign.add_argument("--private-key-filename", required=True, help="Path to the P-521 private key (PEM)")
    p_sign.add_argument(
        "--certificate-id",
        required=True,
        type=uuid.UUID,
        help="Certificate id of the uploaded public certificate, used as the JWS 'kid' header",
    )
    p_sign.add_argument("--canonical", action="store_true", help="Serialize the payload with RFC 8785 (JCS)")
    p_sign.add_argument("--output", help="Optional: write {body, jws, detached} JSON to this path")
    p_sign.set_defaults(func=cmd_sign)

    p_det = sub.add_parser("detach", help="Print the detached-content form of a compact JWS")
    p_det.add_argument("jws")
    p_det.set_defaults(func=cmd_detach)

    p_sub = sub.add_parser("submit", help="Sign a JSON payload and POST it with the detached JWS header")
    p_sub.add_argument("--config", required=True, help="Path to signer configuration JSON")
    p_sub.add_argument("--payload-filename", required=True, help="Path to the JSON payload to sign")
    p_sub.add_argument("--private-key-filename", required=True, help="Path to the P-521 private key (PEM)")
    p_sub.add_argument("--certificate-id", type=uuid.UUID, help="Override the configured certificate id")
    p_sub.add_argument("--access-token", help="Override the configured bearer token")
    p_sub.add_argument("--endpoint", help="Override the configured endpoint URL")
    p_sub.add_argument("--canonical", action="store_true", help="Serialize the payload with RFC 8785 (JCS)")
    p_sub.set_defaults(func=cmd_submit)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except Es512Error as e:
        report_error(e)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
