# subscriptions/forms.py

from django import forms

TRANSITION_FIELDS = {
    'newPackageId': 'new_package_id',
    'packageId': 'new_package_id',
}


class TransitionForm(forms.Form):
    new_package_id = forms.UUIDField(error_messages={'required': "newPackageId is required."})
