# /run.py
import os
from app import create_app

# Create app with the config named in APP_CONFIG (Development by default)
app = create_app(os.getenv("APP_CONFIG", "Development"))

if __name__ == "__main__":
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5000")), threaded=True)
