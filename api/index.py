"""
Serverless entry point for the QA Review Service API
"""
import os
import sys

# Add parent directory to path
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("ISSUE_ANALYSIS_ENABLED", "false")  # Weekly job runs as a cron script instead

from mangum import Mangum
from src.main import app

# Lambda handler for ASGI app; lifespan creates the DB engine and LLM client
handler = Mangum(app, lifespan="auto")
