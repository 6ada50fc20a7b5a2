import os
import sys

from mangum import Mangum

# Serverless entry point; the deploy bundle is not pip-installed
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coin_ledger.api import app

handler = Mangum(app, lifespan="off", api_gateway_base_path="/api")
