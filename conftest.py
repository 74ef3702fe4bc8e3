# Root conftest.py - at project root so .env is loaded before test collection
# and the root directory (context_fields/, server.py) is importable.
from dotenv import load_dotenv
load_dotenv()
