"""
Screen-Time Settlement - Serverless entry point

Wraps the FastAPI app for AWS Lambda / Vercel style handlers.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from screentime_settlement.api.server import app

handler = Mangum(app, lifespan="auto")
