# Run: uvicorn audio_relay_api.main:app --host 0.0.0.0 --port 8000
from audio_relay_api.app import create_app
from audio_relay_api.config import Settings
from audio_relay_api.logging_config import setup_logging

settings = Settings.from_env()
setup_logging(settings.log_level, settings.log_dir)

app = create_app(settings)

if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Serve the audio relay API.")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")

    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
