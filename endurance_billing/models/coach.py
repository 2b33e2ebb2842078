from endurance_billing import db
from endurance_billing.utils.dates import utcnow


class Coach(db.Model):
    """Treinador independente que recebe parte das mensalidades"""
    __tablename__ = 'coaches'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    cpf_cnpj = db.Column(db.String(20))
    mobile_phone = db.Column(db.String(20))

    # Endereço (exigido pelo gateway para abrir a subconta)
    address_street = db.Column(db.String(200))
    address_number = db.Column(db.String(20))
    address_complement = db.Column(db.String(100))
    province = db.Column(db.String(100))  # bairro
    postal_code = db.Column(db.String(10))
    city = db.Column(db.String(100))
    state = db.Column(db.String(2))

    # Nível de comissão: junior, pleno, senior, especialista
    level = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=utcnow)

    subaccount = db.relationship('CoachSubaccount', backref='coach', uselist=False)

    def __repr__(self):
        return f'<Coach {self.name} ({self.level})>'


class CoachSubaccount(db.Model):
    """Subconta do treinador no gateway, destino das transferências de split"""
    __tablename__ = 'coach_subaccounts'

    PENDING = 'pending'
    ACTIVE = 'active'
    SUSPENDED = 'suspended'

    id = db.Column(db.Integer, primary_key=True)
    # Unique: no máximo uma subconta por treinador, mesmo com requisições concorrentes
    coach_id = db.Column(db.Integer, db.ForeignKey('coaches.id'), unique=True, nullable=False)
    # NULL enquanto a criação no gateway está em andamento
    external_subaccount_id = db.Column(db.String(100), unique=True)
    external_wallet_id = db.Column(db.String(100))
    status = db.Column(db.String(20), default=PENDING, nullable=False)
    # Lease de quem está criando a subconta no gateway
    claim_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_provisioned(self):
        return bool(self.external_subaccount_id)

    @property
    def is_active(self):
        return self.is_provisioned and self.status == self.ACTIVE

    def __repr__(self):
        return f'<CoachSubaccount coach={self.coach_id} {self.status}>'
