"""
Modelos de checkout, pagamento e split
Valores monetários sempre em centavos (inteiros)
"""
from endurance_billing import db
from endurance_billing.utils.dates import utcnow


class CheckoutAttempt(db.Model):
    """
    Uma tentativa de checkout identificada pela chave de idempotência.
    A mesma chave nunca gera duas cobranças no gateway.
    """
    __tablename__ = 'checkout_attempts'

    VALIDATING = 'validating'
    PRICING = 'pricing'
    PROVISIONING = 'provisioning'
    CHARGING = 'charging'
    SPLITTING = 'splitting'
    DONE = 'done'
    FAILED = 'failed'

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), unique=True, nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    request_json = db.Column(db.Text, nullable=False)
    state = db.Column(db.String(20), default=VALIDATING, nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'))
    result_json = db.Column(db.Text)
    error_code = db.Column(db.String(50))
    lease_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_resolved(self):
        return self.state == self.DONE and self.result_json is not None

    def __repr__(self):
        return f'<CheckoutAttempt {self.idempotency_key[:12]} {self.state}>'


class Payment(db.Model):
    __tablename__ = 'payments'

    # Status (pending -> confirmed | failed | cancelled; terminais nunca mudam)
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    TERMINAL = (CONFIRMED, FAILED, CANCELLED)

    # Métodos
    PIX = 'pix'
    BOLETO = 'boleto'
    CREDIT_CARD = 'credit_card'
    METHODS = (PIX, BOLETO, CREDIT_CARD)

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey('subscriptions.id'), index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    coach_id = db.Column(db.Integer, db.ForeignKey('coaches.id'))
    plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=False)
    modalidade_id = db.Column(db.Integer, db.ForeignKey('modalidades.id'), nullable=False)
    period = db.Column(db.String(20), nullable=False)

    # Valores (centavos)
    amount = db.Column(db.Integer, nullable=False)
    base_price = db.Column(db.Integer, nullable=False)
    enrollment_fee = db.Column(db.Integer, default=0, nullable=False)
    discount = db.Column(db.Integer, default=0, nullable=False)
    coupon_code = db.Column(db.String(50))
    is_first_cycle = db.Column(db.Boolean, default=True, nullable=False)

    # Status e método
    method = db.Column(db.String(20), nullable=False)
    installment_count = db.Column(db.Integer)
    status = db.Column(db.String(20), default=PENDING, nullable=False, index=True)
    failure_reason = db.Column(db.String(255))

    # IDs externos
    external_payment_id = db.Column(db.String(100), unique=True)
    idempotency_key = db.Column(db.String(128), unique=True, nullable=False)

    # Dados específicos do método
    pix_qr_code = db.Column(db.Text)
    pix_copy_paste = db.Column(db.Text)
    bank_slip_url = db.Column(db.String(500))

    # Timestamps
    due_date = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relacionamentos
    split = db.relationship('SplitRecord', backref='payment', uselist=False)

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL

    def to_dict(self):
        return {
            'id': self.id,
            'subscriptionId': self.subscription_id,
            'userId': self.user_id,
            'coachId': self.coach_id,
            'planId': self.plan_id,
            'modalidadeId': self.modalidade_id,
            'period': self.period,
            'amount': self.amount,
            'basePrice': self.base_price,
            'enrollmentFee': self.enrollment_fee,
            'discount': self.discount,
            'method': self.method,
            'status': self.status,
            'dueDate': self.due_date.isoformat() if self.due_date else None,
            'paidAt': self.paid_at.isoformat() if self.paid_at else None,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Payment {self.id} - {self.amount} - {self.status}>'


class SplitRecord(db.Model):
    """
    Divisão de um pagamento entre treinador e plataforma.
    coach_amount + platform_amount == payment.amount, sempre.
    """
    __tablename__ = 'split_records'

    NOT_APPLICABLE = 'not_applicable'  # sem treinador
    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'), unique=True, nullable=False)
    coach_id = db.Column(db.Integer, db.ForeignKey('coaches.id'))
    coach_amount = db.Column(db.Integer, nullable=False)
    platform_amount = db.Column(db.Integer, nullable=False)
    percentage_applied = db.Column(db.Integer, nullable=False, default=0)

    transfer_status = db.Column(db.String(20), default=NOT_APPLICABLE, nullable=False, index=True)
    external_transfer_id = db.Column(db.String(100))
    transfer_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_transfer_error = db.Column(db.String(255))
    transferred_at = db.Column(db.DateTime)
    # Lease do processing: vencido, o split volta a ser elegível e é resolvido pela referência
    claim_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    def is_claimable(self, now):
        if self.transfer_status == self.QUEUED:
            return True
        return (self.transfer_status == self.PROCESSING
                and (self.claim_expires_at is None or self.claim_expires_at <= now))

    def __repr__(self):
        return f'<SplitRecord payment={self.payment_id} coach={self.coach_amount} platform={self.platform_amount}>'
