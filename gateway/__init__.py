"""HTTP gateway for Vibes DIY."""

from gateway.router import GatewayRouter, create_gateway_app, escape_html, render_vibe_meta

__all__ = ["GatewayRouter", "create_gateway_app", "render_vibe_meta", "escape_html"]
