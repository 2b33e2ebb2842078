import logging
import os

from endurance_billing import create_app, db

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

app = create_app()


@app.shell_context_processor
def make_shell_context():
    from endurance_billing import models
    return {
        'db': db,
        'Plan': models.Plan,
        'Coach': models.Coach,
        'Payment': models.Payment,
        'Subscription': models.Subscription,
        'SplitRecord': models.SplitRecord,
    }


if __name__ == '__main__':
    with app.app_context():
        # Garantir que o diretório instance existe
        os.makedirs(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'instance'), exist_ok=True)

        print(f"Banco de dados: {app.config['SQLALCHEMY_DATABASE_URI']}")
        print(f"Gateway de pagamento: {app.config['PAYMENT_GATEWAY']}")

        db.create_all()
        print("Banco de dados criado/atualizado")

    debug = os.environ.get('FLASK_DEBUG', 'False').lower() in ['true', '1', 'on']
    port = int(os.environ.get('PORT', 5000))
    print(f"Endurance Billing rodando em http://localhost:{port} (debug={debug})")
    app.run(debug=debug, host='0.0.0.0', port=port)
