# tests/conftest.py
"""
Fixtures compartilhados para todos os testes do motor de cobrança
"""
import pytest
from datetime import timedelta

from endurance_billing import create_app, db as _db
from endurance_billing.models import (
    Coach, CoachSubaccount, Modalidade, Plan, PlanPrice, Subscription,
)
from endurance_billing.utils.dates import utcnow

VALID_CARD = {
    'holderName': 'Maria Silva',
    'number': '4539 1488 0343 6467',
    'expiryMonth': '12',
    'expiryYear': '2035',
    'ccv': '123',
}


@pytest.fixture(scope='function')
def app():
    """Cria a aplicação Flask para testes (gateway mock)"""
    return create_app('config.TestingConfig')


@pytest.fixture(scope='function')
def db(app):
    """Cria e limpa o banco de dados para cada teste"""
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app, db):
    """Cliente de teste HTTP"""
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def app_context(app, db):
    """Contexto da aplicação"""
    with app.app_context():
        yield app


@pytest.fixture
def gateway(app):
    """Gateway mock da aplicação (registra todas as chamadas)"""
    return app.extensions['payment_gateway']


@pytest.fixture
def corrida(db):
    modalidade = Modalidade(name='Corrida', slug='corrida')
    db.session.add(modalidade)
    db.session.commit()
    return modalidade


@pytest.fixture
def triathlon(db):
    modalidade = Modalidade(name='Triathlon', slug='triathlon')
    db.session.add(modalidade)
    db.session.commit()
    return modalidade


@pytest.fixture
def plan_essencial(db, corrida):
    """Plano sem taxa de matrícula: mensal R$ 250,00"""
    plan = Plan(name='Essencial Corrida', enrollment_fee=0, is_active=True)
    plan.modalidades.append(corrida)
    db.session.add(plan)
    db.session.flush()
    db.session.add(PlanPrice(plan_id=plan.id, period='monthly', amount=25000))
    db.session.add(PlanPrice(plan_id=plan.id, period='quarterly', amount=55500))
    db.session.commit()
    return plan


@pytest.fixture
def plan_premium(db, corrida):
    """Plano com matrícula padrão da plataforma: mensal R$ 390,00"""
    plan = Plan(name='Premium Corrida', enrollment_fee=None, is_active=True)
    plan.modalidades.append(corrida)
    db.session.add(plan)
    db.session.flush()
    db.session.add(PlanPrice(plan_id=plan.id, period='monthly', amount=39000))
    db.session.add(PlanPrice(plan_id=plan.id, period='yearly', amount=324000))
    db.session.commit()
    return plan


@pytest.fixture
def senior_coach(db):
    coach = Coach(
        name='Carlos Treinador',
        email='carlos@coach.com',
        cpf_cnpj='123.456.789-09',
        mobile_phone='(31) 99999-0000',
        address_street='Rua das Flores',
        address_number='100',
        province='Centro',
        postal_code='30110-000',
        city='Belo Horizonte',
        state='MG',
        level='senior',
    )
    db.session.add(coach)
    db.session.commit()
    return coach


@pytest.fixture
def coach_sem_nivel(db):
    coach = Coach(name='Sem Nível', email='sem-nivel@coach.com', level=None)
    db.session.add(coach)
    db.session.commit()
    return coach


@pytest.fixture
def active_subaccount(db, gateway, senior_coach):
    """Subconta ativa, registrada também no gateway mock"""
    gateway.subaccounts['acc_fixture'] = {'wallet_id': 'wal_fixture', 'status': 'active'}
    subaccount = CoachSubaccount(
        coach_id=senior_coach.id,
        external_subaccount_id='acc_fixture',
        external_wallet_id='wal_fixture',
        status=CoachSubaccount.ACTIVE,
    )
    db.session.add(subaccount)
    db.session.commit()
    return subaccount


@pytest.fixture
def active_subscription(db, plan_essencial, corrida):
    """Assinatura ativa com ciclo mensal terminando em 10 dias"""
    now = utcnow()
    sub = Subscription(
        user_id='user-1',
        plan_id=plan_essencial.id,
        modalidade_id=corrida.id,
        status=Subscription.ACTIVE,
        period='monthly',
        amount=24000,  # valor travado, menor que o preço atual
        start_date=now - timedelta(days=20),
        end_date=now + timedelta(days=10),
        activated_at=now - timedelta(days=20),
    )
    db.session.add(sub)
    db.session.commit()
    return sub


@pytest.fixture
def checkout_data(plan_premium, corrida):
    """Fábrica de payloads de checkout (camelCase, como envia a UI)"""
    def _make(**overrides):
        data = {
            'userId': 'user-1',
            'planId': plan_premium.id,
            'modalidadeId': corrida.id,
            'period': 'monthly',
            'paymentMethod': 'pix',
            'payer': {
                'name': 'Maria Silva',
                'email': 'maria@example.com',
                'cpfCnpj': '529.982.247-25',
                'phone': '31988887777',
            },
        }
        data.update(overrides)
        return data
    return _make


@pytest.fixture
def card_checkout_data(checkout_data):
    """Payload de checkout com cartão de crédito válido"""
    def _make(**overrides):
        overrides.setdefault('paymentMethod', 'credit_card')
        overrides.setdefault('creditCard', dict(VALID_CARD))
        return checkout_data(**overrides)
    return _make
