# endurance_billing/__init__.py
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS

db = SQLAlchemy()
migrate = Migrate()


def create_app(config_object='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Inicializar extensões
    db.init_app(app)
    migrate.init_app(app, db)
    CORS(app, origins=app.config.get('CORS_ORIGINS', '*'))

    # Importar modelos para registrar as tabelas no metadata
    from endurance_billing import models  # noqa: F401

    # Gateway de pagamento configurado (mock, asaas ou stripe)
    from endurance_billing.services.gateways import build_gateway
    app.extensions['payment_gateway'] = build_gateway(app.config)

    # Registrar blueprints
    from endurance_billing.routes import checkout, webhooks
    app.register_blueprint(checkout.bp)
    app.register_blueprint(webhooks.bp)

    # Comandos `flask billing ...`
    from endurance_billing.cli import billing_cli
    app.cli.add_command(billing_cli)

    return app
