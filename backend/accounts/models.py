from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    Donor account. Payment identity lives on ``billing.UserBillingProfile``
    and round-up settings on ``roundups.RoundUpConfig``.
    """
    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    phone = models.CharField(max_length=20, blank=True, null=True, verbose_name="Phone Number")
    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username

    @property
    def is_payable_donor(self):
        """True when the account has a Stripe customer and a default payment method."""
        profile = getattr(self, 'billing_profile', None)
        return bool(profile and profile.is_payable)
