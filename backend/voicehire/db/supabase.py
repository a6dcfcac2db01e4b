"""
Supabase client factory.

The service-role client is built once at application start and handed to the
store; no module-level client exists. Session persistence is disabled because
the backend never acts as a signed-in browser user.
"""

from supabase import Client, create_client
from supabase.lib.client_options import ClientOptions


def create_supabase_client(settings) -> Client:
    return create_client(
        settings.supabase_url,
        settings.supabase_service_key,
        options=ClientOptions(
            schema="public",
            auto_refresh_token=False,
            persist_session=False,
        ),
    )
