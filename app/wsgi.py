from app.portal import create_app

app = create_app()


if __name__ == "__main__":
    # Local development server; production runs gunicorn via scripts/start.py.
    host, _, port = app.config["SETTINGS"].addr.rpartition(":")
    app.run(host=host or "0.0.0.0", port=int(port or 8080), threaded=True)
