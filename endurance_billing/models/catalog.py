from endurance_billing import db
from endurance_billing.utils.dates import utcnow

# Períodos de cobrança aceitos e duração de cada ciclo em dias
PERIOD_DAYS = {
    'weekly': 7,
    'biweekly': 14,
    'monthly': 30,
    'quarterly': 90,
    'semiannual': 180,
    'yearly': 365,
}
PERIODS = tuple(PERIOD_DAYS)

# Máximo de parcelas no cartão por período
MAX_INSTALLMENTS = {
    'weekly': 1,
    'biweekly': 2,
    'monthly': 1,
    'quarterly': 3,
    'semiannual': 6,
    'yearly': 12,
}

plan_modalidades = db.Table(
    'plan_modalidades',
    db.Column('plan_id', db.Integer, db.ForeignKey('plans.id'), primary_key=True),
    db.Column('modalidade_id', db.Integer, db.ForeignKey('modalidades.id'), primary_key=True),
)


class Modalidade(db.Model):
    """Modalidade esportiva atendida (corrida, triathlon...)"""
    __tablename__ = 'modalidades'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(50), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<Modalidade {self.slug}>'


class Plan(db.Model):
    __tablename__ = 'plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    # Taxa de matrícula em centavos; NULL usa o valor padrão da plataforma
    enrollment_fee = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relacionamentos
    prices = db.relationship('PlanPrice', backref='plan', lazy='dynamic', cascade='all, delete-orphan')
    modalidades = db.relationship('Modalidade', secondary=plan_modalidades, lazy='subquery',
                                  backref=db.backref('plans', lazy=True))

    def price_for(self, period):
        """Retorna o PlanPrice do período ou None"""
        return self.prices.filter_by(period=period).first()

    def covers(self, modalidade_id):
        return any(m.id == modalidade_id for m in self.modalidades)

    def __repr__(self):
        return f'<Plan {self.name}>'


class PlanPrice(db.Model):
    __tablename__ = 'plan_prices'
    __table_args__ = (
        db.UniqueConstraint('plan_id', 'period', name='uq_plan_prices_plan_period'),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=False)
    period = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # centavos por ciclo
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<PlanPrice plan={self.plan_id} {self.period} {self.amount}>'


class Coupon(db.Model):
    """Cupom de desconto aplicado no checkout"""
    __tablename__ = 'coupons'

    FIXED_AMOUNT = 'FIXED_AMOUNT'                        # centavos off no total
    PERCENTAGE_AMOUNT = 'PERCENTAGE_AMOUNT'              # % off no plano e na matrícula
    FIXED_SUBSCRIPTION = 'FIXED_SUBSCRIPTION'            # centavos off só no plano
    PERCENTAGE_SUBSCRIPTION = 'PERCENTAGE_SUBSCRIPTION'  # % off só no plano
    FREE_ENROLLMENT = 'FREE_ENROLLMENT'                  # matrícula grátis

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    value = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    usage_limit = db.Column(db.Integer)  # NULL = ilimitado
    used_count = db.Column(db.Integer, default=0, nullable=False)
    valid_from = db.Column(db.DateTime)
    valid_until = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<Coupon {self.code} {self.type}={self.value}>'
