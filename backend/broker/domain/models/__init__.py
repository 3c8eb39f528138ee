from broker.domain.models.audit_log import AuditLog
from broker.domain.models.connection import Connection
from broker.domain.models.credit_transaction import CreditTransaction
from broker.domain.models.credit_wallet import CreditWallet
from broker.domain.models.oauth_state import OAuthState
from broker.domain.models.rate_limit_record import RateLimitRecord
