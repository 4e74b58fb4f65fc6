#!/usr/bin/env python3
"""
Generate a VAPID key pair for push notifications.

Run once when provisioning an environment, or to rotate keys:
    python scripts/generate_vapid_keys.py >> .env

Rotating keys invalidates every existing browser subscription.
"""

from safework.push.keys import KeyManager


def generate_keys():
    """Print the new pair as .env lines."""
    pair = KeyManager.generate_key_pair()
    print(f"VAPID_PUBLIC_KEY={pair.public_key}")
    print(f"VAPID_PRIVATE_KEY={pair.private_key}")
    return pair


if __name__ == "__main__":
    generate_keys()
