# backend/wsgi.py
from healthpay import create_app

app = create_app()
