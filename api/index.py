from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from referrals.api import create_app
from referrals.config import get_settings

# Mangum runs the lifespan around every invocation, so no background worker;
# stale summaries are recomputed on read instead.
settings = get_settings().model_copy(update={"summary_worker_enabled": False})

app = create_app(settings)
app.root_path = "/api"

handler = Mangum(app, lifespan="auto")
