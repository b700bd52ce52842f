# Overview: WSGI/CLI entry point (FLASK_APP=wsgi.py).

from kasse import create_app

app = create_app()
