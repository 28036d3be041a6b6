import logging
import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import app
from ledger.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app.root_path = "/api"

# no lifespan: the background scheduler does not run inside serverless invocations
handler = Mangum(app, lifespan="off")
