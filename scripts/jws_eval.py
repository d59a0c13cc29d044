#!/usr/bin/env python3
# Copyright 2026 Jason M. Lovell
# SPDX-License-Identifier: Apache-2.0
"""
Lightweight evals for ES512 JWS invariants.
Outputs JSON and exits non-zero on failures.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from cryptography.exceptions import InvalidSignature  # noqa: E402
from cryptography.hazmat.primitives import hashes  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature  # noqa: E402

import es512ctl  # noqa: E402

TEST_KID = "11111111-1111-1111-1111-111111111111"


def record(results: list[dict[str, object]], name: str, passed: bool, details: str) -> bool:
    results.append({"name": name, "passed": passed, "details": details})
    return passed


def signature_verifies(jws: str, public_key: ec.EllipticCurvePublicKey) -> bool:
    header_b64, payload_b64, sig_b64 = jws.split(".")
    raw = es512ctl.b64url_decode(sig_b64)
    size = es512ctl.ES512_COORDINATE_SIZE
    der = encode_dss_signature(int.from_bytes(raw[:size], "big"), int.from_bytes(raw[size:], "big"))
    try:
        public_key.verify(der, f"{header_b64}.{payload_b64}".encode("ascii"), ec.ECDSA(hashes.SHA512()))
    except InvalidSignature:
        return False
    return True


def run_evals() -> dict[str, object]:
    results: list[dict[str, object]] = []
    failures = 0
    repo_root = REPO_ROOT

    # Header bytes are fixed: alg then kid
    header_json = es512ctl.JwsHeader(kid=TEST_KID).to_json()
    expected_header = '{"alg":"ES512","kid":"' + TEST_KID + '"}'
    if not record(results, "header_field_order", header_json == expected_header, f"got {header_json}"):
        failures += 1

    key_path = repo_root / "es512-testvector-private-p521.pem"
    payload_path = repo_root / "es512-testvector-payload.json"
    if key_path.exists() and payload_path.exists():
        key = es512ctl.load_private_key_file(key_path)
        payload = es512ctl.load_payload(payload_path)
        signed = es512ctl.sign_payload(payload, kid=TEST_KID, key=key)
        segments = signed.jws.split(".")

        sig_len = len(es512ctl.b64url_decode(segments[2]))
        if not record(
            results,
            "signature_width",
            sig_len == es512ctl.ES512_SIGNATURE_SIZE,
            f"expected {es512ctl.ES512_SIGNATURE_SIZE} bytes, got {sig_len}",
        ):
            failures += 1

        expected_detached = segments[0] + ".." + segments[2]
        if not record(
            results,
            "detached_keeps_header_and_signature",
            signed.detached == expected_detached,
            "detached JWS must reuse header and signature segments",
        ):
            failures += 1

        public_key = key.public_key()
        if not record(
            results,
            "testvector_signature_verifies",
            signature_verifies(signed.jws, public_key),
            "signature must verify with the public key",
        ):
            failures += 1

        # Metamorphic: tampering with the payload must break verification
        payload_bytes = bytearray(es512ctl.b64url_decode(segments[1]))
        payload_bytes[0] ^= 0x01
        tampered = ".".join([segments[0], es512ctl.b64url_encode(bytes(payload_bytes)), segments[2]])
        if not record(
            results,
            "tampered_payload_rejected",
            not signature_verifies(tampered, public_key),
            "a flipped payload byte must fail verification",
        ):
            failures += 1
    else:
        record(results, "testvector_signing", False, "testvector files missing")
        failures += 1

    wrong_curve_path = repo_root / "es512-testvector-private-p256.pem"
    if wrong_curve_path.exists():
        wrong_key = es512ctl.load_private_key_file(wrong_curve_path)
        try:
            es512ctl.build_jws(es512ctl.JwsHeader(kid=TEST_KID), '{"foo":"bar"}', wrong_key)
        except es512ctl.CurveMismatch:
            rejected = True
        else:
            rejected = False
        if not record(results, "p256_key_rejected", rejected, "P-256 key must raise CurveMismatch"):
            failures += 1
    else:
        record(results, "p256_key_rejected", False, "P-256 testvector missing")
        failures += 1

    passed = len(results) - failures
    return {
        "summary": {"total": len(results), "passed": passed, "failed": failures},
        "results": results,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run ES512 JWS invariant evals")
    parser.add_argument("--output", help="Optional path to write JSON results")
    args = parser.parse_args(argv)

    report = run_evals()
    output = json.dumps(report, indent=2, ensure_ascii=True) + "\n"
    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
    else:
        print(output, end="")

    return 0 if report["summary"]["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
