#!/usr/bin/env python3
"""Quick script to list stored vibes, or dump one session's messages."""

import sys

from chat.sessions import VibeSession, list_vibes
from common.store import SessionStore, SessionStoreError

try:
    store = SessionStore(prefix=sys.argv[2] if len(sys.argv) > 2 else "")
except SessionStoreError as e:
    print(e)
    print(
        "Set environment variables: VIBES_BUCKET_NAME, VIBES_ENDPOINT_URL, "
        "VIBES_ACCESS_KEY_ID, VIBES_SECRET_ACCESS_KEY"
    )
    sys.exit(1)

# If a session is requested, print its messages
if len(sys.argv) > 1 and sys.argv[1] != "-":
    session = VibeSession(store, sys.argv[1])
    vibe = session.vibe_doc()
    print(f"--- {vibe.title or 'Unnamed Vibe'} ({session.database}) ---")
    for message in session.messages():
        print(f"\n[{message.type}] {message.text}")
    sys.exit(0)

vibes = list_vibes(store)
if not vibes:
    print("No vibes found.")
    sys.exit(0)

for vibe in vibes:
    star = "*" if vibe.favorite else " "
    published = f" -> {vibe.published_url}" if vibe.published_url else ""
    print(f" {star} {vibe.id}  {vibe.created}  {vibe.title}{published}")
