from soko import create_app
from soko.celery_app import create_celery_app


flask_app = create_app()
celery = create_celery_app(flask_app)
