"""Centralized billing constants — single source of truth for hardcoded values."""

# --- Ecom Payments gateway ---
ECOM_GATEWAY_URL = "https://ecompaymentprocessing.transactiongateway.com/api/transact.php"
ECOM_VAULT_VERIFY_AMOUNT = 1  # cents, micro-charge used to create a customer vault
ECOM_RESPONSE_APPROVED = "1"
ECOM_RESPONSE_DECLINED = "2"
ECOM_RESPONSE_ERROR = "3"

# --- HTTP Client ---
PROVIDER_TIMEOUT = 30  # seconds
HTTP_CONNECT_TIMEOUT = 10  # seconds

# --- Billing ---
DEFAULT_CURRENCY = "USD"
BILLING_PERIOD_DAYS = 365
NO_TRANSACTION_ID = "no_transaction_id"
SIMULATED_TX_PREFIX = "sim_"
FREE_TX_PREFIX = "free_"

# Plan catalog, annual price in cents
PLAN_PRICES = {
    "Starter Plan": 1200,
    "Enhanced Plan": 6000,
    "VIP Plan": 9900,
}

# --- Test cards (always simulated, never sent to a gateway) ---
TEST_CARD_NUMBERS = frozenset({
    "4000000000000002",  # Visa
    "5555555555554444",  # Mastercard
    "378282246310005",  # Amex
    "4000000000000127",  # Visa
})

# --- Card validation ---
CARD_NUMBER_MIN_LENGTH = 13
CARD_NUMBER_MAX_LENGTH = 19
AMEX_PREFIXES = ("34", "37")

# --- User-facing messages ---
GENERIC_PAYMENT_ERROR = "Payment processing failed. Please try again."

# Gateway response_code -> message shown to the payer
PROVIDER_ERROR_MESSAGES = {
    "200": "Transaction was declined by processor",
    "201": "Do not honor",
    "202": "Insufficient funds",
    "203": "Over limit",
    "204": "Transaction not allowed",
    "220": "Incorrect payment information",
    "221": "No such card issuer",
    "222": "No card number on file with issuer",
    "223": "Expired card",
    "224": "Invalid expiration date",
    "225": "Invalid card security code",
    "300": "Transaction was rejected by gateway",
    "400": "Transaction error returned by processor",
    "410": "Invalid merchant configuration",
    "411": "Merchant account is inactive",
    "420": "Communication error",
    "421": "Communication error with issuer",
    "430": "Duplicate transaction at processor",
    "440": "Processor format error",
    "441": "Invalid transaction information",
    "460": "Processor feature not available",
    "461": "Unsupported card type",
    # Stripe decline codes share the table
    "card_declined": "Transaction was declined by processor",
    "insufficient_funds": "Insufficient funds",
    "expired_card": "Expired card",
    "incorrect_cvc": "Invalid card security code",
    "incorrect_number": "Incorrect payment information",
    "processing_error": "Transaction error returned by processor",
}

# --- Subscription status ---
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_PAST_DUE = "past_due"

# --- Payment history types ---
HISTORY_INITIAL_SUBSCRIPTION = "initial_subscription"
HISTORY_ONE_TIME_PAYMENT = "one_time_payment"
HISTORY_RECURRING_PAYMENT = "recurring_payment"
HISTORY_RECURRING_PAYMENT_FAILED = "recurring_payment_failed"
HISTORY_SUBSCRIPTION_CANCELLATION = "subscription_cancellation"
HISTORY_SUBSCRIPTION_DELETED = "subscription_deleted"
HISTORY_PAYMENT_METHOD_UPDATE = "payment_method_update"
HISTORY_VAULT_CREATION = "vault_creation"
HISTORY_PLAN_UPGRADE = "plan_upgrade"
HISTORY_PLAN_DOWNGRADE = "plan_downgrade"
HISTORY_SUBSCRIPTION_UPDATED = "subscription_update"

# --- Webhook event types (normalized across providers) ---
EVENT_PAYMENT_SUCCESS = "recurring_payment_success"
EVENT_PAYMENT_FAILED = "recurring_payment_failed"
EVENT_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
EVENT_SUBSCRIPTION_DELETED = "subscription_deleted"
EVENT_SUBSCRIPTION_UPDATED = "subscription_updated"
EVENT_CHECKOUT_COMPLETED = "checkout_completed"

# Stripe event type -> normalized event type
STRIPE_EVENT_TYPES = {
    "invoice.paid": EVENT_PAYMENT_SUCCESS,
    "invoice.payment_failed": EVENT_PAYMENT_FAILED,
    "customer.subscription.updated": EVENT_SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EVENT_SUBSCRIPTION_DELETED,
    "checkout.session.completed": EVENT_CHECKOUT_COMPLETED,
}

# Checkout session payment_status values that mean the first invoice is settled
CHECKOUT_PAID_STATUSES = frozenset({"paid", "no_payment_required"})
