"""Forms validating the JSON bodies of the store endpoints."""

from django import forms

from django_replay_store.store.services.checkout import CheckoutFlow


class ProductIdListField(forms.Field):
    """A list of product ids, given as a JSON array or a comma-separated string."""

    default_error_messages = {
        "invalid": "Enter a list of product ids.",
    }

    def to_python(self, value: object) -> list[str]:
        if value in self.empty_values:
            return []
        if isinstance(value, str):
            items = value.split(",")
        elif isinstance(value, (list, tuple)):
            items = value
        else:
            raise forms.ValidationError(self.error_messages["invalid"], code="invalid")
        if not all(isinstance(item, (str, int)) for item in items):
            raise forms.ValidationError(self.error_messages["invalid"], code="invalid")
        return [str(item).strip() for item in items if str(item).strip()]


class CheckoutSessionForm(forms.Form):
    """Request body for creating a payment session.

    ``product_ids`` is optional; the session cart is used when it is omitted.
    """

    product_ids = ProductIdListField(required=False)
    guest_email = forms.EmailField(required=False)
    coupon_code = forms.CharField(max_length=100, required=False, strip=True)
    flow = forms.ChoiceField(
        choices=[(flow.value, flow.value) for flow in CheckoutFlow],
        required=False,
    )
    attempt_id = forms.CharField(max_length=100, required=False, strip=True)

    def clean_flow(self) -> CheckoutFlow:
        return CheckoutFlow(self.cleaned_data.get("flow") or CheckoutFlow.PAYMENT_INTENT)


class ConfirmPaymentForm(forms.Form):
    """Request body for confirming a completed payment."""

    payment_reference = forms.CharField(max_length=200, strip=True)
    create_account = forms.BooleanField(required=False)
    coupon_code = forms.CharField(max_length=100, required=False, strip=True)


class AccessCheckForm(forms.Form):
    """Query string for the access check endpoint."""

    replay_id = forms.UUIDField(required=False)
    event_year = forms.IntegerField(min_value=1900, max_value=9999)


class CouponEvaluateForm(forms.Form):
    """Request body for previewing a coupon against a subtotal."""

    code = forms.CharField(max_length=100, strip=True)
    subtotal = forms.IntegerField(min_value=0)
    currency = forms.CharField(max_length=3, required=False, strip=True)


class CartItemForm(forms.Form):
    """Request body for adding a product to the cart."""

    product_id = forms.CharField(max_length=100, strip=True)
