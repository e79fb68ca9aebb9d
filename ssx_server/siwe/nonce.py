from __future__ import annotations

import siwe

# one siwe nonce is 11 alphanumerics (~65 bits); issued challenges are 17 (~101 bits)
NONCE_LENGTH = 17


def generate_nonce(length: int = NONCE_LENGTH) -> str:
    if length < 8:
        raise ValueError("nonce_too_short")
    nonce = ""
    while len(nonce) < length:
        nonce += siwe.generate_nonce()
    return nonce[:length]
