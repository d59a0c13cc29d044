#!/usr/bin/env python3
# Copyright 2026 Jason M. Lovell
# SPDX-License-Identifier: Apache-2.0
"""
A reference MCP server that signs JSON request payloads with ES512.
Exposes the public half of its signing key as a resource and provides tools
to produce compact and detached JWS values.
"""

import json
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from mcp.server.fastmcp import FastMCP

import es512ctl

# Initialize FastMCP server
mcp = FastMCP("ES512 Request Signer")

# The signing key for this server lives next to this script
KEY_PATH = Path(__file__).parent / "es512-signer-key.pem"


@mcp.resource("es512://public-key")
def get_public_key() -> str:
    """
    Returns the PEM public key matching this server's signing key.
    """
    if not KEY_PATH.exists():
        return json.dumps({"error": "Signing key not found for this server."})
    try:
        key = es512ctl.load_private_key_file(KEY_PATH)
    except es512ctl.KeyParseError as e:
        return json.dumps({"error": str(e)})
    pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode("ascii")


@mcp.tool()
def sign_payload(payload_json: str, certificate_id: str, canonical: bool = False) -> str:
    """
    Sign a JSON payload and return {body, jws, detached} as JSON.
    """
    try:
        if not KEY_PATH.exists():
            return "Error: signing key not found on server."
        payload = es512ctl.parse_payload(payload_json.encode("utf-8"))
        key = es512ctl.load_private_key_file(KEY_PATH)
        signed = es512ctl.sign_payload(payload, kid=certificate_id, key=key, canonical=canonical)
        return json.dumps(signed.to_dict())
    except es512ctl.Es512Error as e:
        return f"Error: [{e.kind}] " + " <- ".join(es512ctl.error_chain(e))


@mcp.tool()
def detach_jws(jws: str) -> str:
    """
    Return the detached-content form of a compact JWS.
    """
    if jws.count(".") != 2:
        return "Error: expected a compact JWS with three '.'-separated segments."
    return es512ctl.detach_jws(jws)


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
