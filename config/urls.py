from django.urls import path

from apps.webhooks.api import DeadLetterDetailView, DeadLetterListView
from apps.webhooks.views import instagram_webhook, paypal_webhook, razorpay_webhook

urlpatterns = [
    path("webhooks/instagram", instagram_webhook, name="instagram-webhook"),
    path("webhooks/razorpay", razorpay_webhook, name="razorpay-webhook"),
    path("webhooks/paypal", paypal_webhook, name="paypal-webhook"),
    path("ops/dead-letters", DeadLetterListView.as_view(), name="dead-letter-list"),
    path("ops/dead-letters/<int:record_id>", DeadLetterDetailView.as_view(), name="dead-letter-detail"),
]
