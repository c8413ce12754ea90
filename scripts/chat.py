#!/usr/bin/env python3
"""Interactive chat with a running Vibes DIY gateway."""

import argparse
import json

import httpx


def stream_turn(client: httpx.Client, base_url: str, payload: dict) -> dict | None:
    """Send one prompt, printing the response as it streams. Returns the final result."""
    printed = 0
    event = "message"
    with client.stream("POST", f"{base_url}/api/chat/stream", json=payload) as response:
        response.raise_for_status()
        for line in response.iter_lines():
            if line.startswith("event:"):
                event = line[len("event:") :].strip()
                continue
            if not line.startswith("data:"):
                continue
            data = json.loads(line[len("data:") :].strip())
            if event == "message":
                text = data["text"]
                print(text[printed:], end="", flush=True)
                printed = len(text)
            elif event == "done":
                return data
            elif event == "error":
                print(f"\n[error: {data['error']}]")
                return None
    return None


def main(base_url: str = "http://localhost:8000", session_id: str | None = None, model=None):
    print("Vibes DIY Chat")
    print("=" * 40)
    print(f"Gateway: {base_url}")
    print("Type 'quit' to exit, 'publish' to publish the latest app")
    print()

    with httpx.Client(timeout=httpx.Timeout(300.0)) as client:
        while True:
            try:
                message = input("\nYou: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            if not message:
                continue
            if message.lower() == "quit":
                print("Goodbye!")
                break

            if message.lower() == "publish":
                if not session_id:
                    print("Nothing to publish yet")
                    continue
                response = client.post(f"{base_url}/api/sessions/{session_id}/publish")
                if response.is_success:
                    print(f"Published: {response.json()['published_url']}")
                else:
                    print(f"Publish failed: {response.text}")
                continue

            print("\nAI: ", end="", flush=True)
            payload = {"prompt": message, "session_id": session_id, "model": model}
            result = stream_turn(client, base_url, payload)
            if not result:
                continue

            session_id = result["session_id"]
            if result.get("error"):
                print(f"\n[{result['error']}]")
                if result.get("needs_new_key") or result.get("needs_login"):
                    print("[A new API key or login is required]")
            elif result.get("title"):
                print(f"\n\n[Session {session_id}: {result['title']}]")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chat with a Vibes DIY gateway")
    parser.add_argument("--url", default="http://localhost:8000", help="Gateway base URL")
    parser.add_argument("--session", default=None, help="Existing session ID to continue")
    parser.add_argument("--model", default=None, help="Model override")
    args = parser.parse_args()
    main(base_url=args.url.rstrip("/"), session_id=args.session, model=args.model)
