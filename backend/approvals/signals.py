from django.dispatch import Signal

# Signal fired when a new approval request is created
# Provides: sender=ManagerApprovalRequest, instance=request_instance, created=True
approval_request_created = Signal()

# Signal fired when an approval request is resolved (approved or denied)
# Provides: sender=ManagerApprovalRequest, instance=request_instance, outcome='approved'|'denied'
approval_request_resolved = Signal()
