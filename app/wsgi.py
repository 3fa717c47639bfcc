from app.elearn import create_app

app = create_app()


if __name__ == "__main__":
    # Local development server; production runs gunicorn via scripts/start.py.
    app.run(host="0.0.0.0", port=int(app.config.get("PORT") or 3000))
