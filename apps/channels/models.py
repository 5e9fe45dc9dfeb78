"""Domain models for the channels module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.common.security import decrypt_value, encrypt_value, is_encrypted
from apps.doctors.models import Doctor


class InstagramAccount(TimeStampedModel):
    """Instagram professional account connected to a doctor.

    Webhooks are routed to the doctor through ``page_id``; the page access
    token is stored encrypted.
    """

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="instagram_accounts"
    )
    page_id = models.CharField(max_length=64, unique=True)
    username = models.CharField(max_length=100, blank=True)
    access_token = models.TextField()
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"{self.username or self.page_id} ({self.doctor})"

    def save(self, *args, **kwargs):
        if self.access_token and not is_encrypted(self.access_token):
            self.access_token = encrypt_value(self.access_token)
        super().save(*args, **kwargs)

    def get_access_token(self) -> str:
        return decrypt_value(self.access_token)
