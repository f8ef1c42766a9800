"""ASGI entrypoint for the teletherapy API."""

from teletherapy.api.app import create_app
from teletherapy.containers import build_container

app = create_app(build_container())
