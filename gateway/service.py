"""Modal deployment of the Vibes DIY gateway."""

import logging
import os

import modal

logger = logging.getLogger(__name__)

# Modal image for the gateway
gateway_image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "httpx>=0.27.0",
        "pydantic>=2.7.0",
        "langchain-core>=0.3.0",
        "langchain-openai>=0.3.0",
        "boto3>=1.34.0",
    )
    .add_local_python_source("callai", "chat", "common", "gateway", "prompts", "security")
)

app = modal.App("vibes-diy")

# OpenRouter secret (must have SERVER_OPENROUTER_PROV_KEY, optionally OPENROUTER_API_KEY)
openrouter_secret = modal.Secret.from_name("openrouter-secret")

# R2 secret (must have VIBES_BUCKET_NAME, VIBES_ACCESS_KEY_ID,
# VIBES_SECRET_ACCESS_KEY, VIBES_ENDPOINT_URL)
r2_secret = modal.Secret.from_name("r2-secret")


def build_app():
    """Assemble the gateway from environment configuration."""
    from callai.env import configure_debug_logging
    from callai.keys import init_key_store
    from chat.service import ChatService
    from common.store import SessionStore, SessionStoreError
    from gateway.router import create_gateway_app

    logging.basicConfig(level=logging.INFO)
    configure_debug_logging()
    init_key_store()

    try:
        store = SessionStore()
    except SessionStoreError as e:
        logger.error(f"Session storage unavailable: {e}")
        store = None

    chat_service = ChatService(store) if store is not None else None
    return create_gateway_app(
        store=store,
        chat_service=chat_service,
        client_timeout=30.0,
        api_base_url=os.environ.get("VIBES_API_BASE_URL"),
    )


@app.function(
    image=gateway_image,
    secrets=[openrouter_secret, r2_secret],
    timeout=600,
    scaledown_window=300,
)
@modal.concurrent(max_inputs=100)
@modal.asgi_app()
def gateway():
    """Expose the FastAPI gateway as an ASGI app."""
    return build_app()


@app.function(image=gateway_image, secrets=[r2_secret])
def _list_vibes() -> list[dict]:
    from chat.sessions import list_vibes
    from common.store import SessionStore

    return [vibe.model_dump() for vibe in list_vibes(SessionStore())]


# CLI entrypoint for checking the deployment's storage
@app.local_entrypoint()
def check_storage():
    """List stored vibes through the deployed secrets."""
    vibes = _list_vibes.remote()
    print(f"Found {len(vibes)} vibes")
    for vibe in vibes[:10]:
        print(f"  - {vibe['id']}: {vibe['title']}")
