"""Per-request application state.

The auth middleware builds one ``AppContext`` for every request from the
stored credential and the company's settings, and puts it on
``request.state.ctx``. Handlers read it; they never mutate it. Signing in,
signing out and saving settings are transitions that return a new context.
"""

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class CompanySettings:
    currency: str = "USD"
    enabled_platforms: tuple[str, ...] = ("UBER", "CABIFY", "BOLT", "TAXXILO")
    custom_platforms: tuple[str, ...] = ()

    @property
    def platforms(self) -> list[str]:
        """Enabled platforms followed by custom ones, without repeats."""
        seen: dict[str, None] = {}
        for p in (*self.enabled_platforms, *self.custom_platforms):
            if p:
                seen.setdefault(p, None)
        return list(seen)

    def add_custom(self, name: str) -> "CompanySettings":
        """A custom platform is enabled as soon as it is added."""
        name = (name or "").strip().upper()
        if not name:
            return self
        custom = self.custom_platforms if name in self.custom_platforms else (*self.custom_platforms, name)
        enabled = self.enabled_platforms if name in self.enabled_platforms else (*self.enabled_platforms, name)
        return replace(self, custom_platforms=custom, enabled_platforms=enabled)

    def remove_custom(self, name: str) -> "CompanySettings":
        name = (name or "").strip().upper()
        return replace(
            self,
            custom_platforms=tuple(p for p in self.custom_platforms if p != name),
            enabled_platforms=tuple(p for p in self.enabled_platforms if p != name),
        )

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "enabled_platforms": list(self.enabled_platforms),
            "custom_platforms": list(self.custom_platforms),
        }


DEFAULT_SETTINGS = CompanySettings()


@dataclass(frozen=True)
class AppContext:
    is_authenticated: bool = False
    role: str | None = None          # "admin" | "driver"
    user_id: int | None = None
    user_name: str = ""
    company_id: int | None = None
    admin_id: int | None = None
    settings: CompanySettings = field(default_factory=lambda: DEFAULT_SETTINGS)

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and self.role == "admin"

    @property
    def is_driver(self) -> bool:
        return self.is_authenticated and self.role == "driver"

    @property
    def platforms(self) -> list[str]:
        return self.settings.platforms

    def login(
        self,
        role: str,
        user_id: int,
        name: str,
        company_id: int,
        admin_id: int | None = None,
    ) -> "AppContext":
        return replace(
            self,
            is_authenticated=True,
            role=role,
            user_id=user_id,
            user_name=name,
            company_id=company_id,
            admin_id=admin_id,
        )

    def logout(self) -> "AppContext":
        return AppContext()

    def with_settings(self, settings: CompanySettings) -> "AppContext":
        return replace(self, settings=settings)
