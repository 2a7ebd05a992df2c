from django.dispatch import Signal

# Sent after an order is settled, inside the settling transaction.
# kwargs: order, payments (list of Payment), user
payment_completed = Signal()
