import os

# Keep app imports from loading cluster config or starting background threads
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
