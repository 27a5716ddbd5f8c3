from .auth import User, SessionToken, PendingAction
from .security import SecurityEvent
from .wallet import FundingPermission, PaymentTransaction, WalletLedgerEntry, GatewayWebhookEvent

__all__ = [
    'User', 'SessionToken', 'PendingAction',
    'SecurityEvent',
    'FundingPermission', 'PaymentTransaction', 'WalletLedgerEntry', 'GatewayWebhookEvent',
]
