import asyncio
import json

import jwt
import pytest
from asgiref.sync import async_to_sync

from core.exceptions import ApiError, ErrorKind, NotAuthenticatedError
from core.services.api_gateway import ApiResponse
from core.services.session import (
    AUTH_TOKEN_KEY,
    ROLE_REJECTED_LOGIN,
    ROLE_REJECTED_REGISTER,
    USER_DATA_KEY,
    SessionManager,
    SessionState,
    UserRecord,
)
from core.storage import MemoryCredentialStore
from core.tests.factories import SIGNING_KEY, FakeGateway, auth_payload, ok, user_payload


def login(manager, gateway, role='patient', token='t1'):
    gateway.respond('POST', '/auth/login', ok(auth_payload(role=role, token=token)))
    return async_to_sync(manager.login)({'email': 'a@b.com', 'password': 'x'})


def assert_pair_consistent(manager):
    assert (manager.get_token() is None) == (manager.get_user() is None)


class StickyTokenStore(MemoryCredentialStore):
    """Refuses to delete ``auth_token``."""

    async def remove_item(self, key):
        if key == AUTH_TOKEN_KEY:
            raise OSError('disk busy')
        await super().remove_item(key)

    async def multi_remove(self, keys):
        keys = list(keys)
        if AUTH_TOKEN_KEY in keys:
            raise OSError('disk busy')
        await super().multi_remove(keys)


class NoEnumerationStore(MemoryCredentialStore):

    async def get_all_keys(self):
        raise OSError('enumeration not supported')


# ----------------------------------------------------------------------
# Login / register
# ----------------------------------------------------------------------
def test_patient_login_establishes_session(manager, gateway, store):
    result = login(manager, gateway)

    assert result.success
    assert result.token == 't1'
    assert manager.is_authenticated()
    assert manager.get_token() == 't1'
    assert manager.state is SessionState.AUTHENTICATED
    assert async_to_sync(manager.has_completed_onboarding)()

    saved = store.snapshot()
    assert saved[AUTH_TOKEN_KEY] == 't1'
    assert json.loads(saved[USER_DATA_KEY])['id'] == 'u1'
    assert gateway.calls_to('/auth/login')[0][2] == {'email': 'a@b.com', 'password': 'x'}


def test_login_lowercases_email(manager, gateway):
    gateway.respond('POST', '/auth/login', ok(auth_payload()))
    async_to_sync(manager.login)({'email': '  A@B.com ', 'password': 'x'})
    assert gateway.calls_to('/auth/login')[0][2]['email'] == 'a@b.com'


def test_doctor_login_is_rejected_and_nothing_persisted(manager, gateway, store):
    result = login(manager, gateway, role='doctor')

    assert not result.success
    assert result.message == ROLE_REJECTED_LOGIN
    assert result.reason == 'role'
    assert result.token is None
    assert not manager.is_authenticated()
    assert AUTH_TOKEN_KEY not in store.snapshot()
    assert USER_DATA_KEY not in store.snapshot()


@pytest.mark.parametrize('role', ['doctor', 'nurse', 'system_admin', 'ministry_official', 'healthcare_provider', 'janitor'])
def test_any_non_patient_role_never_holds_a_session(role, gateway):
    store = MemoryCredentialStore({AUTH_TOKEN_KEY: 'old', USER_DATA_KEY: json.dumps(user_payload())})
    manager = SessionManager(store, gateway)
    async_to_sync(manager.initialize)()
    assert manager.is_authenticated()

    result = login(manager, gateway, role=role, token='t-staff')

    assert not result.success
    assert not manager.is_authenticated()
    assert_pair_consistent(manager)
    assert AUTH_TOKEN_KEY not in store.snapshot()
    assert USER_DATA_KEY not in store.snapshot()


def test_register_forces_patient_role(manager, gateway):
    gateway.respond('POST', '/auth/register', ok(auth_payload()))
    result = async_to_sync(manager.register)({
        'firstName': 'Amina', 'lastName': 'Otieno', 'email': 'a@b.com',
        'password': 'secret1', 'role': 'doctor', 'phone': '',
    })

    assert result.success
    body = gateway.calls_to('/auth/register')[0][2]
    assert body['role'] == 'patient'
    assert 'phone' not in body


def test_register_rejects_non_patient_response(manager, gateway):
    gateway.respond('POST', '/auth/register', ok(auth_payload(role='nurse')))
    result = async_to_sync(manager.register)({
        'firstName': 'Amina', 'lastName': 'Otieno', 'email': 'a@b.com', 'password': 'secret1',
    })
    assert not result.success
    assert result.message == ROLE_REJECTED_REGISTER
    assert not manager.is_authenticated()


def test_role_rejection_clears_failure_callbacks(manager, gateway):
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))

    result = login(manager, gateway, role='doctor')

    assert result.reason == 'role'
    assert manager.failure_callbacks == ()
    assert fired == []


def test_register_role_rejection_clears_failure_callbacks(manager, gateway):
    manager.on_authentication_failure(lambda: None)
    gateway.respond('POST', '/auth/register', ok(auth_payload(role='healthcare_provider')))

    result = async_to_sync(manager.register)({
        'firstName': 'Amina', 'lastName': 'Otieno', 'email': 'a@b.com', 'password': 'secret1',
    })

    assert result.reason == 'role'
    assert manager.failure_callbacks == ()


def test_invalid_credentials_fail_validation_without_network(manager, gateway):
    result = async_to_sync(manager.login)({'email': 'not-an-email', 'password': 'x'})

    assert not result.success
    assert result.reason == 'validation'
    assert result.message == 'Please enter a valid email'
    assert gateway.calls == []


def test_short_register_password_fails_validation(manager, gateway):
    result = async_to_sync(manager.register)({
        'firstName': 'Amina', 'lastName': 'Otieno', 'email': 'a@b.com', 'password': '123',
    })
    assert result.reason == 'validation'
    assert result.message == 'Password must be at least 6 characters'
    assert gateway.calls == []


def test_backend_declining_login_returns_failed_result(manager, gateway):
    gateway.respond('POST', '/auth/login', ApiResponse(success=False, message='Invalid email or password'))
    result = async_to_sync(manager.login)({'email': 'a@b.com', 'password': 'x'})

    assert not result.success
    assert result.reason == 'credentials'
    assert result.message == 'Invalid email or password'
    assert manager.state is SessionState.UNAUTHENTICATED


def test_failed_login_does_not_broadcast(manager, gateway):
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('POST', '/auth/login', ApiError('Authentication failed (401): Invalid credentials',
                                                    ErrorKind.UNAUTHORIZED, status=401))

    with pytest.raises(ApiError) as exc_info:
        async_to_sync(manager.login)({'email': 'a@b.com', 'password': 'wrong'})

    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert fired == []
    assert manager.state is SessionState.UNAUTHENTICATED


def test_login_without_token_in_response_is_invalid(manager, gateway):
    gateway.respond('POST', '/auth/login', ok({'user': user_payload()}))
    with pytest.raises(ApiError) as exc_info:
        async_to_sync(manager.login)({'email': 'a@b.com', 'password': 'x'})
    assert exc_info.value.kind is ErrorKind.INVALID_RESPONSE
    assert not manager.is_authenticated()


def test_login_replaces_previous_session(manager, gateway, store):
    login(manager, gateway, token='t1')
    async_to_sync(store.set_item)('cached_user', '{"stale": true}')

    gateway.respond('POST', '/auth/login', ok(auth_payload(token='t2', uid='u2')))
    async_to_sync(manager.login)({'email': 'b@c.com', 'password': 'y'})

    assert manager.get_token() == 't2'
    assert manager.get_user().id == 'u2'
    assert 'cached_user' not in store.snapshot()


def test_user_record_accepts_mongo_id():
    user = UserRecord.from_payload({'_id': 'abc', 'role': 'patient', 'firstName': 'Amina', 'lastName': 'Otieno'})
    assert user.id == 'abc'
    assert user.display_name == 'Amina Otieno'
    assert UserRecord.from_json(user.to_json()) == user


def test_user_record_without_role_is_invalid():
    with pytest.raises(ApiError) as exc_info:
        UserRecord.from_payload({'id': 'u1'})
    assert exc_info.value.kind is ErrorKind.INVALID_RESPONSE


# ----------------------------------------------------------------------
# Initialize
# ----------------------------------------------------------------------
def test_initialize_restores_persisted_session(gateway):
    store = MemoryCredentialStore({AUTH_TOKEN_KEY: 't1', USER_DATA_KEY: json.dumps(user_payload())})
    manager = SessionManager(store, gateway)

    assert async_to_sync(manager.initialize)() is SessionState.AUTHENTICATED
    assert manager.get_token() == 't1'
    assert manager.get_user().first_name == 'Amina'
    assert gateway.calls == []


@pytest.mark.parametrize('items', [
    {AUTH_TOKEN_KEY: 't1'},
    {USER_DATA_KEY: json.dumps(user_payload())},
    {AUTH_TOKEN_KEY: 't1', USER_DATA_KEY: '{not json'},
])
def test_initialize_leaves_incomplete_session_untouched(items, gateway):
    store = MemoryCredentialStore(items)
    manager = SessionManager(store, gateway)

    assert async_to_sync(manager.initialize)() is SessionState.UNAUTHENTICATED
    assert not manager.is_authenticated()
    assert_pair_consistent(manager)
    assert store.snapshot() == items


def test_initialize_clears_persisted_staff_session(gateway):
    store = MemoryCredentialStore({AUTH_TOKEN_KEY: 't1', USER_DATA_KEY: json.dumps(user_payload(role='doctor'))})
    manager = SessionManager(store, gateway)
    manager.on_authentication_failure(lambda: None)

    async_to_sync(manager.initialize)()

    assert not manager.is_authenticated()
    assert store.snapshot() == {}
    assert manager.failure_callbacks == ()


# ----------------------------------------------------------------------
# Logout and wipe
# ----------------------------------------------------------------------
def test_logout_wipes_everything_but_preserved_keys(manager, gateway, store):
    login(manager, gateway)
    gateway.respond('POST', '/auth/logout', ok())
    preserved = {
        'RCTAsyncLocalStorage_V1': 'x',
        'ReactNativeAsyncStorageDevtools:state': 'y',
        'MMKV.default': 'z',
        'expo-constants@installationId': 'install-1',
    }
    async_to_sync(store.multi_set)(list(preserved.items()) + [('cached_medical_records', '[]'), ('misc', '1')])

    async_to_sync(manager.logout)()

    assert store.snapshot() == preserved
    assert manager.get_token() is None
    assert manager.get_user() is None
    assert async_to_sync(manager.verify_logout_status)()
    assert len(gateway.calls_to('/auth/logout')) == 1


def test_logout_survives_server_error(manager, gateway, store):
    login(manager, gateway)
    gateway.respond('POST', '/auth/logout', ApiError('HTTP 500', ErrorKind.SERVER, status=500))

    async_to_sync(manager.logout)()

    assert not manager.is_authenticated()
    assert AUTH_TOKEN_KEY not in store.snapshot()


def test_logout_twice_is_harmless(manager, gateway, store):
    login(manager, gateway)
    gateway.respond('POST', '/auth/logout', ok())

    async_to_sync(manager.logout)()
    after_first = store.snapshot()
    async_to_sync(manager.logout)()

    assert store.snapshot() == after_first
    assert not manager.is_authenticated()
    # no token on the second call, so no server round trip
    assert len(gateway.calls_to('/auth/logout')) == 1


def test_logout_clears_failure_callbacks(manager, gateway):
    manager.on_authentication_failure(lambda: None)
    login(manager, gateway)
    gateway.respond('POST', '/auth/logout', ok())

    async_to_sync(manager.logout)()

    assert manager.failure_callbacks == ()


def test_wipe_falls_back_to_known_keys_without_enumeration(gateway):
    store = NoEnumerationStore({
        AUTH_TOKEN_KEY: 't1',
        USER_DATA_KEY: json.dumps(user_payload()),
        'cached_user': '{}',
        'auth_token_data': '{}',
        'onboarding_completed': 'true',
        'something_else': '1',
    })
    manager = SessionManager(store, gateway)

    async_to_sync(manager.perform_complete_logout)()

    assert store.snapshot() == {'something_else': '1'}


def test_force_logout_broadcasts_even_if_store_fails():
    store = StickyTokenStore({AUTH_TOKEN_KEY: 't1', USER_DATA_KEY: json.dumps(user_payload())})
    manager = SessionManager(store, FakeGateway())
    async_to_sync(manager.initialize)()
    fired = []
    manager.on_authentication_failure(lambda: fired.append('a'))
    manager.on_authentication_failure(lambda: fired.append('b'))

    async_to_sync(manager.force_complete_logout)()

    assert fired == ['a', 'b']
    assert manager.get_token() is None
    assert manager.get_user() is None
    assert not async_to_sync(manager.verify_logout_status)()


# ----------------------------------------------------------------------
# Failure callbacks
# ----------------------------------------------------------------------
def test_broadcast_isolates_failing_callback(manager):
    fired = []

    def broken():
        raise RuntimeError('boom')

    manager.on_authentication_failure(broken)
    manager.on_authentication_failure(lambda: fired.append('b'))

    async_to_sync(manager.handle_authentication_failure)()

    assert fired == ['b']


def test_callbacks_survive_authentication_failure(manager):
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))

    async_to_sync(manager.handle_authentication_failure)()
    async_to_sync(manager.handle_authentication_failure)()

    assert fired == [1, 1]


def test_callbacks_fire_once_per_registration_and_remove_together(manager):
    class Screen:
        def __init__(self):
            self.calls = 0

        def on_logout(self):
            self.calls += 1

    screen = Screen()
    manager.on_authentication_failure(screen.on_logout)
    manager.on_authentication_failure(screen.on_logout)
    async_to_sync(manager.handle_authentication_failure)()
    assert screen.calls == 2

    manager.remove_authentication_failure_callback(screen.on_logout)
    assert manager.failure_callbacks == ()
    async_to_sync(manager.handle_authentication_failure)()
    assert screen.calls == 2


def test_callback_removed_during_broadcast_still_runs_that_round(manager):
    fired = []

    def second():
        fired.append('second')

    def first():
        fired.append('first')
        manager.remove_authentication_failure_callback(second)

    manager.on_authentication_failure(first)
    manager.on_authentication_failure(second)

    async_to_sync(manager.handle_authentication_failure)()
    async_to_sync(manager.handle_authentication_failure)()

    assert fired == ['first', 'second', 'first']


def test_coroutine_callbacks_are_scheduled(manager):
    fired = []

    async def on_failure():
        fired.append('async')

    async def broken():
        raise RuntimeError('boom')

    async def scenario():
        manager.on_authentication_failure(broken)
        manager.on_authentication_failure(on_failure)
        await manager.handle_authentication_failure()
        for _ in range(3):
            await asyncio.sleep(0)

    async_to_sync(scenario)()

    assert fired == ['async']


# ----------------------------------------------------------------------
# Authenticated calls
# ----------------------------------------------------------------------
def test_current_user_401_broadcasts_once(manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('GET', '/auth/me', ApiError('Authentication failed (401): Unauthorized',
                                                ErrorKind.UNAUTHORIZED, status=401))

    with pytest.raises(ApiError):
        async_to_sync(manager.get_current_user)()

    assert fired == [1]
    assert not manager.is_authenticated()


def test_untyped_unauthorized_error_is_recognized(manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('GET', '/auth/me', RuntimeError('401 Unauthorized'))

    with pytest.raises(RuntimeError):
        async_to_sync(manager.get_current_user)()

    assert fired == [1]
    assert not manager.is_authenticated()


def test_gateway_handled_failure_is_not_broadcast_twice(manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))

    async def rejecting_get(endpoint):
        # what ApiGateway does on a 401 from an authenticated endpoint
        await manager.handle_authentication_failure()
        error = ApiError('Authentication failed (401): Unauthorized', ErrorKind.UNAUTHORIZED, status=401)
        error.handled = True
        raise error

    gateway.get = rejecting_get

    with pytest.raises(ApiError):
        async_to_sync(manager.get_current_user)()

    assert fired == [1]


@pytest.mark.parametrize('error', [
    RuntimeError('fetch failed'),
    ApiError('Network request failed: fetch failed', ErrorKind.NETWORK),
    ApiError('HTTP 500', ErrorKind.SERVER, status=500),
])
def test_current_user_transport_error_keeps_session(error, manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('GET', '/auth/me', error)

    with pytest.raises(type(error)):
        async_to_sync(manager.get_current_user)()

    assert fired == []
    assert manager.is_authenticated()


def test_current_user_refreshes_profile(manager, gateway, store):
    login(manager, gateway)
    gateway.respond('GET', '/auth/me', ok({'user': user_payload(firstName='Neema', fullName=None)}))

    response = async_to_sync(manager.get_current_user)()

    assert response.success
    assert manager.get_user().first_name == 'Neema'
    assert json.loads(store.snapshot()[USER_DATA_KEY])['firstName'] == 'Neema'
    assert gateway.tokens_seen[-1] == 't1'


def test_current_user_unsuccessful_body_counts_as_auth_failure(manager, gateway):
    login(manager, gateway)
    gateway.respond('GET', '/auth/me', ApiResponse(success=False, message='Token expired'))

    with pytest.raises(ApiError) as exc_info:
        async_to_sync(manager.get_current_user)()

    assert exc_info.value.message == 'Failed to get user data - token may be invalid'
    assert not manager.is_authenticated()


def test_current_user_with_changed_role_ends_session(manager, gateway):
    login(manager, gateway)
    gateway.respond('GET', '/auth/me', ok({'user': user_payload(role='doctor')}))

    with pytest.raises(ApiError) as exc_info:
        async_to_sync(manager.get_current_user)()

    assert exc_info.value.kind is ErrorKind.FORBIDDEN
    assert not manager.is_authenticated()


def test_current_user_without_session_does_not_broadcast(manager, gateway):
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))

    with pytest.raises(NotAuthenticatedError):
        async_to_sync(manager.get_current_user)()

    assert fired == []
    assert gateway.calls == []


def test_validate_token_is_strict(manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('GET', '/auth/me', ApiError('Network request failed', ErrorKind.NETWORK))

    assert async_to_sync(manager.validate_token)() is False
    assert fired == [1]
    assert not manager.is_authenticated()


def test_is_logged_in(manager, gateway):
    assert async_to_sync(manager.is_logged_in)() is False

    login(manager, gateway)
    gateway.respond('GET', '/auth/me', ok({'user': user_payload()}))
    assert async_to_sync(manager.is_logged_in)() is True


def test_refresh_token_stores_new_token(manager, gateway, store):
    login(manager, gateway)
    gateway.respond('POST', '/auth/refresh', ok({'token': 't2'}))

    assert async_to_sync(manager.refresh_token)() is True
    assert manager.get_token() == 't2'
    assert store.snapshot()[AUTH_TOKEN_KEY] == 't2'


def test_refresh_token_failure_ends_session(manager, gateway):
    login(manager, gateway)
    fired = []
    manager.on_authentication_failure(lambda: fired.append(1))
    gateway.respond('POST', '/auth/refresh', ApiResponse(success=False, message='Refresh not allowed'))

    assert async_to_sync(manager.refresh_token)() is False
    assert fired == [1]
    assert not manager.is_authenticated()


def test_refresh_token_without_session(manager, gateway):
    assert async_to_sync(manager.refresh_token)() is False
    assert gateway.calls == []


def test_ensure_fresh_token_only_refreshes_near_expiry(manager, gateway):
    long_lived = jwt.encode({'sub': 'u1', 'exp': 4102444800}, SIGNING_KEY, algorithm='HS256')
    expired = jwt.encode({'sub': 'u1', 'exp': 1000}, SIGNING_KEY, algorithm='HS256')
    gateway.respond('POST', '/auth/refresh', ok({'token': 't-new'}))

    login(manager, gateway, token=long_lived)
    assert async_to_sync(manager.ensure_fresh_token)() is True
    assert gateway.calls_to('/auth/refresh') == []

    login(manager, gateway, token=expired)
    assert async_to_sync(manager.ensure_fresh_token)() is True
    assert manager.get_token() == 't-new'


def test_change_password(manager, gateway):
    login(manager, gateway)
    gateway.respond('PUT', '/auth/change-password', ok(message='Password changed successfully'))

    response = async_to_sync(manager.change_password)('secret1', 'secret2')

    assert response.message == 'Password changed successfully'
    assert gateway.calls_to('/auth/change-password')[0][2] == {
        'currentPassword': 'secret1', 'newPassword': 'secret2',
    }


def test_change_password_validation(manager, gateway):
    login(manager, gateway)
    with pytest.raises(ApiError) as exc_info:
        async_to_sync(manager.change_password)('secret1', 'secret1')
    assert exc_info.value.kind is ErrorKind.VALIDATION
    assert gateway.calls_to('/auth/change-password') == []


def test_change_password_requires_session(manager):
    with pytest.raises(NotAuthenticatedError):
        async_to_sync(manager.change_password)('secret1', 'secret2')


# ----------------------------------------------------------------------
# Onboarding
# ----------------------------------------------------------------------
def test_onboarding_flag(manager, store):
    assert async_to_sync(manager.has_completed_onboarding)() is False
    async_to_sync(manager.set_onboarding_completed)()
    assert store.snapshot()['onboarding_completed'] == 'true'
    assert async_to_sync(manager.has_completed_onboarding)() is True
    async_to_sync(manager.clear_onboarding_status)()
    assert async_to_sync(manager.has_completed_onboarding)() is False


def test_onboarding_read_error_means_not_completed(gateway):
    class BrokenStore(MemoryCredentialStore):
        async def get_item(self, key):
            raise OSError('locked')

    manager = SessionManager(BrokenStore(), gateway)
    assert async_to_sync(manager.has_completed_onboarding)() is False
