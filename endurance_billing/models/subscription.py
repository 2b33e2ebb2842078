from endurance_billing import db
from endurance_billing.utils.dates import utcnow


class Subscription(db.Model):
    __tablename__ = 'subscriptions'

    PENDING = 'pending'
    ACTIVE = 'active'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'
    ON_LEAVE = 'on_leave'  # licença

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=False)
    modalidade_id = db.Column(db.Integer, db.ForeignKey('modalidades.id'), nullable=False)
    coach_id = db.Column(db.Integer, db.ForeignKey('coaches.id'))
    status = db.Column(db.String(20), default=PENDING, nullable=False)  # pending, active, cancelled, expired, on_leave
    period = db.Column(db.String(20), nullable=False)
    # Valor travado no checkout (centavos por ciclo, sem matrícula)
    amount = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    activated_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relacionamentos
    plan = db.relationship('Plan')
    payments = db.relationship('Payment', backref='subscription', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'planId': self.plan_id,
            'modalidadeId': self.modalidade_id,
            'coachId': self.coach_id,
            'status': self.status,
            'period': self.period,
            'amount': self.amount,
            'startDate': self.start_date.isoformat() if self.start_date else None,
            'endDate': self.end_date.isoformat() if self.end_date else None,
        }

    def __repr__(self):
        return f'<Subscription {self.user_id} - {self.status}>'
