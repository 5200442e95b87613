# backend/wsgi.py
from giftflow import create_app

app = create_app()
