from rest_framework import serializers

from core.permissions import ROLE_CHOICES, ROLE_PATIENT


class LoginSerializer(serializers.Serializer):
    email = serializers.EmailField(error_messages={'invalid': 'Please enter a valid email'})
    password = serializers.CharField(trim_whitespace=False)

    def validate_email(self, v):
        return (v or '').strip().lower()

    def validate_password(self, v):
        if not v:
            raise serializers.ValidationError('Password is required')
        return v


class RegisterSerializer(serializers.Serializer):
    firstName = serializers.CharField(min_length=2, error_messages={'min_length': 'First name must be at least 2 characters'})
    lastName = serializers.CharField(min_length=2, error_messages={'min_length': 'Last name must be at least 2 characters'})
    email = serializers.EmailField(error_messages={'invalid': 'Please enter a valid email'})
    password = serializers.CharField(min_length=6, trim_whitespace=False,
                                     error_messages={'min_length': 'Password must be at least 6 characters'})
    phone = serializers.CharField(required=False, allow_blank=True, max_length=32)
    role = serializers.ChoiceField(choices=ROLE_CHOICES, required=False)

    def validate_email(self, v):
        return (v or '').strip().lower()

    def validate(self, attrs):
        # Mobile registrations are always patients, whatever the caller sent
        attrs['role'] = ROLE_PATIENT
        if not attrs.get('phone'):
            attrs.pop('phone', None)
        return attrs


class ChangePasswordSerializer(serializers.Serializer):
    currentPassword = serializers.CharField(trim_whitespace=False)
    newPassword = serializers.CharField(min_length=6, trim_whitespace=False,
                                        error_messages={'min_length': 'Password must be at least 6 characters'})

    def validate(self, attrs):
        if attrs['currentPassword'] == attrs['newPassword']:
            raise serializers.ValidationError('New password must be different from the current password')
        return attrs


class PinSerializer(serializers.Serializer):
    pin = serializers.RegexField(r'^\d{4}$', error_messages={'invalid': 'PIN must be exactly 4 digits'})


class UserRecordSerializer(serializers.Serializer):
    """Validates the user profile returned by ``/auth/login``, ``/auth/register`` and ``/auth/me``."""
    id = serializers.CharField()
    firstName = serializers.CharField(required=False, allow_blank=True, default='')
    lastName = serializers.CharField(required=False, allow_blank=True, default='')
    email = serializers.CharField(required=False, allow_blank=True, default='')
    role = serializers.CharField()
    phone = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    fullName = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    avatar = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    emailVerified = serializers.BooleanField(required=False, allow_null=True)
    lastLogin = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def to_internal_value(self, data):
        # MongoDB documents expose the primary key as ``_id``
        if isinstance(data, dict) and 'id' not in data and '_id' in data:
            data = {**data, 'id': data['_id']}
        return super().to_internal_value(data)


def first_error_message(errors) -> str:
    """Flatten DRF ``serializer.errors`` into the first human readable message."""
    if isinstance(errors, dict):
        for value in errors.values():
            return first_error_message(value)
    if isinstance(errors, (list, tuple)) and errors:
        return first_error_message(errors[0])
    return str(errors) if errors else 'Validation failed'
