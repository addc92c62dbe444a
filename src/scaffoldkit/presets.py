"""Reusable option configurations for the bundled project templates.

Each configuration is a small frozen struct whose :meth:`apply` adds the
generation flag and the post-create patch that replaces the template's
placeholder values. Compose them with :meth:`ProjectOptions.with_config`::

    options = (
        ProjectOptions.empty()
        .with_config(SharedAccessKeyAuthentication("x-shared-access-key", "key", "s3cr3t"))
        .with_config(SerilogLogging(instrumentation_key="abc"))
    )
"""

from dataclasses import dataclass

from scaffoldkit.options import ProjectOptions
from scaffoldkit.patcher import SourcePatcher

USER_ERROR_MARKER = "#error"

REQUEST_HEADER_PLACEHOLDER = "YOUR REQUEST HEADER NAME"
SECRET_NAME_PLACEHOLDER = "YOUR SECRET NAME"
SECRET_PROVIDER_PLACEHOLDER = "secretProvider: null"
CERTIFICATE_SUBJECT_PLACEHOLDER = "YOUR CERTIFICATE SUBJECT NAME"
INSTRUMENTATION_KEY_PLACEHOLDER = "YOUR APPLICATION INSIGHTS INSTRUMENTATION KEY"

IN_MEMORY_SECRET_PROVIDER = (
    'new InMemorySecretProvider(new System.Collections.Generic.Dictionary<string, string> '
    '{{ ["{secret_name}"] = "{secret_value}" }})'
)


@dataclass(frozen=True)
class SharedAccessKeyAuthentication:
    """``--authentication SharedAccessKey`` with the header and secret patched in.

    :param header_name: Request header that carries the key
    :param secret_name: Name under which the key is stored
    :param secret_value: Expected key value
    :param target_file: Project file holding the authentication placeholders
    :param secret_provider: Format string for the in-memory secret provider
        expression that replaces ``secretProvider: null``
    """

    header_name: str
    secret_name: str
    secret_value: str
    target_file: str = "Startup.cs"
    secret_provider: str = IN_MEMORY_SECRET_PROVIDER

    def __post_init__(self):
        for label, value in (
            ("header name", self.header_name),
            ("secret name", self.secret_name),
            ("secret value", self.secret_value),
        ):
            if not value or not value.strip():
                raise ValueError(f"Shared access key authentication requires a non-blank {label}")

    def apply(self, options: ProjectOptions) -> ProjectOptions:
        return options.with_option("--authentication SharedAccessKey", update=self._patch)

    def _patch(self, patcher: SourcePatcher) -> None:
        provider = self.secret_provider.format(
            secret_name=self.secret_name, secret_value=self.secret_value
        )

        def transform(contents: str) -> str:
            contents = contents.replace(SECRET_PROVIDER_PLACEHOLDER, provider)
            contents = contents.replace(REQUEST_HEADER_PLACEHOLDER, self.header_name)
            contents = contents.replace(SECRET_NAME_PLACEHOLDER, self.secret_name)
            return remove_user_errors(contents)

        patcher.update_file(self.target_file, transform)


@dataclass(frozen=True)
class CertificateSubjectAuthentication:
    """``--authentication Certificate`` validating on the certificate subject."""

    subject: str
    target_file: str = "appsettings.json"

    def apply(self, options: ProjectOptions) -> ProjectOptions:
        if not self.subject or not self.subject.strip():
            raise ValueError("Certificate authentication requires a non-blank subject")
        return options.with_option(
            "--authentication Certificate",
            update=lambda patcher: patcher.update_file(
                self.target_file,
                lambda contents: contents.replace(CERTIFICATE_SUBJECT_PLACEHOLDER, self.subject),
            ),
        )


@dataclass(frozen=True)
class JwtAuthentication:
    """``--authentication JWT``; the template needs no placeholder patching."""

    def apply(self, options: ProjectOptions) -> ProjectOptions:
        return options.with_option("--authentication JWT")


@dataclass(frozen=True)
class SerilogLogging:
    """``--logging Serilog`` with the telemetry instrumentation key filled in."""

    instrumentation_key: str
    target_file: str = "appsettings.json"

    def apply(self, options: ProjectOptions) -> ProjectOptions:
        return options.with_option(
            "--logging Serilog",
            update=lambda patcher: patcher.update_file(
                self.target_file,
                lambda contents: contents.replace(
                    INSTRUMENTATION_KEY_PLACEHOLDER, self.instrumentation_key
                ),
            ),
        )


@dataclass(frozen=True)
class DefaultLogging:
    def apply(self, options: ProjectOptions) -> ProjectOptions:
        return options.with_option("--logging Default")


def remove_user_errors(contents: str) -> str:
    """Drop the ``#error`` lines templates use to force users to fill in placeholders."""
    lines = [line for line in contents.splitlines() if USER_ERROR_MARKER not in line]
    trailing = "\n" if contents.endswith("\n") else ""
    return "\n".join(lines) + trailing
