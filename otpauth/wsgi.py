"""WSGI entry point, e.g. ``gunicorn otpauth.wsgi:app``."""
import atexit

from . import create_app, shutdown_app

app = create_app()
atexit.register(shutdown_app, app)
