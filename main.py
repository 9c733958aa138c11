# Simple local runner. Deployments should start with:
#   uvicorn mediaconv.main:app --host 0.0.0.0 --port 8000
import os

from mediaconv.main import app

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
