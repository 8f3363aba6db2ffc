import os

os.environ.setdefault("FINTRACK_DATABASE_URL", "sqlite://")
os.environ.setdefault("FINTRACK_TIMEZONE", "UTC")
os.environ.setdefault("FINTRACK_CREATE_SCHEMA", "true")
