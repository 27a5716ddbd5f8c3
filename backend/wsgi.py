# backend/wsgi.py
from nexpos import create_app

app = create_app()
