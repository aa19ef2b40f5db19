from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from core.context import build_session_context


class Command(BaseCommand):
    help = "Show the persisted session, onboarding flag and stored keys."

    def add_arguments(self, parser):
        parser.add_argument('--validate', action='store_true',
                            help='Also validate the token against the backend (logs out if it is rejected).')

    def handle(self, *args, **opts):
        ctx = build_session_context()
        manager = ctx.manager

        async def run():
            await manager.initialize()
            onboarding = await manager.has_completed_onboarding()
            keys = await ctx.store.get_all_keys()
            valid = await manager.validate_token() if opts['validate'] and manager.is_authenticated() else None
            return onboarding, keys, valid

        onboarding, keys, valid = async_to_sync(run)()
        user = manager.get_user()

        self.stdout.write(f"state: {manager.state.value}")
        self.stdout.write(f"user: {f'{user.display_name} ({user.role})' if user else '-'}")
        self.stdout.write(f"onboarding completed: {'yes' if onboarding else 'no'}")
        self.stdout.write(f"stored keys: {', '.join(sorted(keys)) or '-'}")
        if valid is not None:
            if valid:
                self.stdout.write(self.style.SUCCESS("token: valid"))
            else:
                self.stdout.write(self.style.ERROR("token: rejected (session cleared)"))
