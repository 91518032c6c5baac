"""Run script: ``python main.py`` for the dev server, ``gunicorn main:app`` otherwise."""

from coze_proxy.app import configure, create_app, serve

settings = configure()
app = create_app(settings)

if __name__ == "__main__":
    serve(app, settings)
