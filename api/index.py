import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cashback.api import create_app

app = create_app()

handler = Mangum(app)
