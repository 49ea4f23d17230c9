"""
Entry point for Flask.

Usage (from project root):

    export FLASK_APP=run.py
    flask db upgrade              # or: flask db init / migrate on first run
    flask create-user --email owner@example.ch --password secret --organization "Commune de Sion"
    flask close-expired-tenders   # schedule this (cron) to close tenders past their deadline
    flask run

or:

    flask --app run.py --debug run
"""

from equitender import create_app

# WSGI application object. `flask run` looks for this `app` variable.
app = create_app()

if __name__ == "__main__":
    # Direct `python run.py` usage (dev only); use `flask run` or a WSGI server otherwise.
    app.run(debug=True)
