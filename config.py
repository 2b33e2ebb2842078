import os
from dotenv import load_dotenv

load_dotenv()

# Diretório base do projeto
basedir = os.path.abspath(os.path.dirname(__file__))


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


def _env_float(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return float(value)


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-change-in-production'

    # Database - Usar caminho absoluto
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'billing.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Gateway de pagamento: mock, asaas ou stripe
    PAYMENT_GATEWAY = (os.environ.get('PAYMENT_GATEWAY') or 'mock').lower()
    GATEWAY_TIMEOUT = _env_float('GATEWAY_TIMEOUT', 20.0)

    # Asaas
    ASAAS_API_KEY = os.environ.get('ASAAS_API_KEY')
    ASAAS_BASE_URL = os.environ.get('ASAAS_BASE_URL') or 'https://sandbox.asaas.com/api/v3'
    ASAAS_WEBHOOK_TOKEN = os.environ.get('ASAAS_WEBHOOK_TOKEN')

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')

    # Gateway mock (ambientes sem credenciais)
    WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET') or 'dev-webhook-secret'
    MOCK_SETTLE_SECONDS = _env_int('MOCK_SETTLE_SECONDS', 30)
    MOCK_CARD_DECLINE_RATE = _env_float('MOCK_CARD_DECLINE_RATE', 0.1)
    MOCK_SUBACCOUNT_STATUS = os.environ.get('MOCK_SUBACCOUNT_STATUS') or 'active'
    MOCK_RANDOM_SEED = _env_int('MOCK_RANDOM_SEED', 42)

    # Cobrança (valores em centavos)
    ENROLLMENT_FEE_CENTS = _env_int('ENROLLMENT_FEE_CENTS', 5000)  # R$ 50,00
    COMMISSION_PERCENTAGES = {
        'junior': 60,
        'pleno': 65,
        'senior': 70,
        'especialista': 75,
    }
    PIX_DUE_MINUTES = _env_int('PIX_DUE_MINUTES', 30)
    BOLETO_DUE_DAYS = _env_int('BOLETO_DUE_DAYS', 3)

    # Idempotência e concorrência
    IDEMPOTENCY_BUCKET_SECONDS = _env_int('IDEMPOTENCY_BUCKET_SECONDS', 300)
    CHECKOUT_LEASE_SECONDS = _env_int('CHECKOUT_LEASE_SECONDS', 60)
    SUBACCOUNT_CLAIM_LEASE_SECONDS = _env_int('SUBACCOUNT_CLAIM_LEASE_SECONDS', 60)
    TRANSFER_CLAIM_LEASE_SECONDS = _env_int('TRANSFER_CLAIM_LEASE_SECONDS', 120)

    # Reconciliação
    RECONCILE_PENDING_AFTER_SECONDS = _env_int('RECONCILE_PENDING_AFTER_SECONDS', 30)
    RECONCILE_BATCH_SIZE = _env_int('RECONCILE_BATCH_SIZE', 100)

    # CORS - frontend Next.js
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SECRET_KEY = 'test-secret-key-for-testing'
    PAYMENT_GATEWAY = 'mock'
    WEBHOOK_SECRET = 'test-webhook-secret'
    MOCK_CARD_DECLINE_RATE = 0.0
    MOCK_SUBACCOUNT_STATUS = 'active'
    ASAAS_WEBHOOK_TOKEN = 'test-asaas-token'
    STRIPE_WEBHOOK_SECRET = 'whsec_test'
