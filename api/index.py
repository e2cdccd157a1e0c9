# Vercel serverless function entry point
# Exposes the attendance bot's FastAPI app to Vercel's serverless environment

import sys
import os

# Vercel runs this from the api/ directory; put the project root on the path so 'app' resolves
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from app.main import app  # noqa: E402,F401
