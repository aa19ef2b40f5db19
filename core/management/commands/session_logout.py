from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from core.context import build_session_context


class Command(BaseCommand):
    help = "Log out and wipe every persisted credential/cache key (infrastructure keys are kept)."

    def add_arguments(self, parser):
        parser.add_argument('--force', action='store_true',
                            help='Skip the server logout call and wipe local state only.')

    def handle(self, *args, **opts):
        ctx = build_session_context()
        manager = ctx.manager

        async def run():
            await manager.initialize()
            if opts['force']:
                await manager.force_complete_logout()
            else:
                await manager.logout()
            return await manager.verify_logout_status()

        if async_to_sync(run)():
            self.stdout.write(self.style.SUCCESS("Logged out; no credential material remains."))
        else:
            self.stdout.write(self.style.WARNING("Logged out, but credential keys could not be verified as removed."))
