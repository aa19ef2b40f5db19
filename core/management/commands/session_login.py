from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand, CommandError

from core.context import build_session_context
from core.exceptions import ApiError, api_exception_payload


class Command(BaseCommand):
    help = "Sign in to the MamaCare backend as a patient and persist the session."

    def add_arguments(self, parser):
        parser.add_argument('--email', required=True)
        parser.add_argument('--password', required=True)

    def handle(self, *args, **opts):
        ctx = build_session_context()
        try:
            result = async_to_sync(ctx.manager.login)({'email': opts['email'], 'password': opts['password']})
        except ApiError as exc:
            error = api_exception_payload(exc)["error"]
            raise CommandError(f"Login failed ({error['code']}): {error['message']}") from exc

        if not result.success:
            raise CommandError(f"Login rejected ({result.reason}): {result.message}")
        user = result.user
        self.stdout.write(self.style.SUCCESS(f"ok: {user.display_name} <{user.email}> ({user.role})"))
