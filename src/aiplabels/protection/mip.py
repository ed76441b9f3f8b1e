"""
Microsoft Information Protection (MIP) File SDK binding.

Implements the protocols in ``aiplabels.protection.base`` on top of the .NET
MIP SDK through pythonnet.

Requirements:
    - pythonnet >= 3.0 (``pip install aiplabels[mip]``)
    - MIP SDK NuGet package Microsoft.InformationProtection.File, with the
      native binaries for the process architecture under ``protection.sdk_path``
    - API app registration with delegated permissions for the protection
      and policy services (on-behalf-of)

Usage:
    runtime = MipRuntime(settings)
    profile = runtime.load_profile()        # once per process
    engine = profile.add_engine(upn, "en-US", token_source)
    handler = engine.create_handler(ContentSource.from_bytes(data, "a.docx"))
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, BinaryIO

from aiplabels.exceptions import ProfileLoadError
from aiplabels.protection.base import TokenSource
from aiplabels.protection.models import (
    AssignmentMethod,
    ContentLabel,
    ContentSource,
    Label,
    LabelingOptions,
    ProtectionDescriptor,
    ProtectionSettings,
)
from aiplabels.server.config import Settings

logger = logging.getLogger(__name__)

# Check for pythonnet availability
try:
    import clr
    PYTHONNET_AVAILABLE = True
except ImportError:
    PYTHONNET_AVAILABLE = False
    clr = None

# MIP SDK loaded flag
_MIP_ASSEMBLIES_LOADED = False

_REQUIRED_ASSEMBLIES = (
    "Microsoft.InformationProtection.dll",
    "Microsoft.InformationProtection.File.dll",
)

_ASSIGNMENT_NAMES = {
    AssignmentMethod.STANDARD: "Standard",
    AssignmentMethod.PRIVILEGED: "Privileged",
    AssignmentMethod.AUTO: "Auto",
}


def is_mip_available() -> bool:
    """Check if the .NET bridge is installed."""
    return PYTHONNET_AVAILABLE


def default_sdk_path() -> Path:
    """Default MIP SDK location for the platform."""
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA", "")) / "MIP" / "SDK"
    return Path.home() / ".mip" / "sdk"


def _load_mip_assemblies(mip_sdk_path: Path) -> None:
    """
    Load MIP SDK .NET assemblies.

    The MIP SDK path should contain the managed assemblies plus an ``x64`` or
    ``x86`` folder with the native binaries.
    """
    global _MIP_ASSEMBLIES_LOADED

    if _MIP_ASSEMBLIES_LOADED:
        return

    if not PYTHONNET_AVAILABLE:
        raise ProfileLoadError("pythonnet is not installed; the MIP SDK is unavailable")

    if not mip_sdk_path.exists():
        raise ProfileLoadError("MIP SDK path not found", details={"sdk_path": str(mip_sdk_path)})

    # Add the MIP SDK path to the .NET assembly search path
    sys.path.insert(0, str(mip_sdk_path))

    for dll in _REQUIRED_ASSEMBLIES:
        dll_path = mip_sdk_path / dll
        if not dll_path.exists():
            raise ProfileLoadError("MIP SDK assembly not found", details={"assembly": str(dll_path)})
        clr.AddReference(str(dll_path))
        logger.debug("Loaded assembly: %s", dll)

    _MIP_ASSEMBLIES_LOADED = True
    logger.info("MIP SDK assemblies loaded")


def _native_path(mip_sdk_path: Path) -> str:
    return str(mip_sdk_path / ("x64" if sys.maxsize > 2**32 else "x86"))


def _await(task: Any) -> Any:
    """Block on a .NET Task from a worker thread."""
    return task.GetAwaiter().GetResult()


def _to_label(mip_label: Any, parent_id: str | None = None) -> Label:
    """Convert a .NET label and its children, keeping policy order."""
    label = Label(
        id=str(mip_label.Id),
        name=str(mip_label.Name),
        description=str(mip_label.Description or ""),
        sensitivity=int(getattr(mip_label, "Sensitivity", 0) or 0),
        tooltip=str(getattr(mip_label, "Tooltip", "") or ""),
        color=str(mip_label.Color) if getattr(mip_label, "Color", None) else None,
        is_active=bool(getattr(mip_label, "IsActive", True)),
        parent_id=parent_id,
    )
    children = getattr(mip_label, "Children", None) or []
    label.children = [_to_label(child, label.id) for child in children]
    return label


def _string_list(values: list[str]) -> Any:
    from System import String
    from System.Collections.Generic import List

    result = List[String]()
    for value in values:
        result.Add(value)
    return result


def _to_labeling_options(options: LabelingOptions) -> Any:
    from System import String
    from System.Collections.Generic import KeyValuePair, List
    from Microsoft.InformationProtection import AssignmentMethod as MipAssignmentMethod
    from Microsoft.InformationProtection.File import LabelingOptions as MipLabelingOptions

    mip_options = MipLabelingOptions()
    mip_options.AssignmentMethod = getattr(MipAssignmentMethod, _ASSIGNMENT_NAMES[options.assignment_method])
    mip_options.IsDowngradeJustified = options.is_downgrade_justified
    if options.justification_message:
        mip_options.JustificationMessage = options.justification_message

    properties = List[KeyValuePair[String, String]]()
    for key, value in options.extended_properties:
        properties.Add(KeyValuePair[String, String](key, value))
    mip_options.ExtendedProperties = properties
    return mip_options


def _to_protection_settings(settings: ProtectionSettings) -> Any:
    from Microsoft.InformationProtection.File import ProtectionSettings as MipProtectionSettings

    mip_settings = MipProtectionSettings()
    if settings.delegated_user_email:
        mip_settings.DelegatedUserEmail = settings.delegated_user_email
    if settings.pfile_extension_behavior:
        from Microsoft.InformationProtection.File import PFileExtensionBehavior

        mip_settings.PFileExtensionBehavior = getattr(
            PFileExtensionBehavior, settings.pfile_extension_behavior
        )
    return mip_settings


def _to_descriptor(descriptor: ProtectionDescriptor) -> Any:
    from System.Collections.Generic import List
    from Microsoft.InformationProtection import ProtectionDescriptor as MipDescriptor
    from Microsoft.InformationProtection import UserRights as MipUserRights

    user_rights = List[MipUserRights]()
    for ur in descriptor.user_rights:
        user_rights.Add(MipUserRights(_string_list(ur.users), _string_list(ur.rights)))
    mip_descriptor = MipDescriptor(user_rights)
    if descriptor.name:
        mip_descriptor.Name = descriptor.name
    if descriptor.description:
        mip_descriptor.Description = descriptor.description
    return mip_descriptor


# .NET types derived from Python classes can only be registered once per process
_DELEGATE_TYPES: dict[str, Any] = {}


def _delegate_types() -> dict[str, Any]:
    if _DELEGATE_TYPES:
        return _DELEGATE_TYPES

    from Microsoft.InformationProtection import Consent, IAuthDelegate, IConsentDelegate

    class AuthDelegate(IAuthDelegate):
        __namespace__ = "AIPLabels"

        def AcquireToken(self, identity, authority, resource, claims):
            # Errors are recorded on the token source; the SDK only takes a string
            return self.token_source.acquire(
                str(resource), str(authority) if authority else None, claims or None
            )

    class ConsentDelegate(IConsentDelegate):
        __namespace__ = "AIPLabels"

        def GetUserConsent(self, url):
            return Consent.Accept

    _DELEGATE_TYPES["auth"] = AuthDelegate
    _DELEGATE_TYPES["consent"] = ConsentDelegate
    return _DELEGATE_TYPES


def _create_auth_delegate(token_source: TokenSource) -> Any:
    """Wrap a Python token source in the SDK's IAuthDelegate."""
    delegate = _delegate_types()["auth"]()
    delegate.token_source = token_source
    return delegate


def _create_consent_delegate() -> Any:
    """Create a consent delegate that auto-consents."""
    return _delegate_types()["consent"]()


class MipHandler:
    """An open .NET file handler over one document."""

    def __init__(self, handler: Any, engine: Any, file_name: str, input_stream: Any = None):
        self._handler = handler
        self._engine = engine
        self._input = input_stream
        self.file_name = file_name

    def get_label(self) -> ContentLabel | None:
        content_label = self._handler.Label
        if content_label is None or content_label.Label is None:
            return None
        method = str(content_label.AssignmentMethod).lower()
        return ContentLabel(
            label=_to_label(content_label.Label),
            is_protection_applied_from_label=bool(content_label.IsProtectionAppliedFromLabel),
            assignment_method=AssignmentMethod(method) if method in AssignmentMethod._value2member_map_
            else AssignmentMethod.STANDARD,
        )

    def is_protected(self) -> bool:
        return self._handler.Protection is not None

    def set_label(self, label: Label, options: LabelingOptions, settings: ProtectionSettings) -> None:
        mip_label = self._engine.GetLabelById(label.id)
        self._handler.SetLabel(mip_label, _to_labeling_options(options), _to_protection_settings(settings))

    def delete_label(self, options: LabelingOptions) -> None:
        self._handler.DeleteLabel(_to_labeling_options(options))

    def set_protection(self, descriptor: ProtectionDescriptor, settings: ProtectionSettings) -> None:
        self._handler.SetProtection(_to_descriptor(descriptor), _to_protection_settings(settings))

    def commit(self, output: BinaryIO) -> bool:
        from System.IO import MemoryStream

        stream = MemoryStream()
        try:
            committed = bool(_await(self._handler.CommitAsync(stream)))
            if committed:
                output.write(bytes(stream.ToArray()))
            return committed
        finally:
            stream.Dispose()

    def notify_commit_successful(self, file_name: str) -> None:
        self._handler.NotifyCommitSuccessful(file_name)

    def dispose(self) -> None:
        try:
            self._handler.Dispose()
        finally:
            if self._input is not None:
                self._input.Dispose()
                self._input = None


class MipEngine:
    """A .NET file engine bound to one identity."""

    def __init__(self, engine: Any, identity: str):
        self._engine = engine
        self.identity = identity

    @property
    def engine_id(self) -> str:
        return str(self._engine.Settings.EngineId)

    def list_labels(self) -> list[Label]:
        return [_to_label(mip_label) for mip_label in self._engine.SensitivityLabels]

    def get_label(self, label_id: str) -> Label | None:
        try:
            mip_label = self._engine.GetLabelById(label_id)
        except Exception as e:
            logger.debug("Label %s not resolved by engine: %s", label_id, e)
            return None
        if mip_label is None:
            return None
        parent = getattr(mip_label, "Parent", None)
        return _to_label(mip_label, str(parent.Id) if parent is not None else None)

    def create_handler(self, source: ContentSource) -> MipHandler:
        from System import Array, Byte
        from System.IO import MemoryStream

        input_stream = None
        if source.is_stream:
            input_stream = MemoryStream(Array[Byte](source.data))
            handler = _await(self._engine.CreateFileHandlerAsync(input_stream, source.file_name, True))
        else:
            handler = _await(self._engine.CreateFileHandlerAsync(source.path, source.path, True))

        return MipHandler(handler, self._engine, source.file_name, input_stream)


class MipProfile:
    """The process-wide .NET file profile."""

    def __init__(self, profile: Any, context: Any):
        self._profile = profile
        self._context = context

    def add_engine(self, identity: str, locale: str, token_source: TokenSource) -> MipEngine:
        from Microsoft.InformationProtection import Identity
        from Microsoft.InformationProtection.File import FileEngineSettings

        engine_settings = FileEngineSettings(identity, _create_auth_delegate(token_source), "", locale)
        engine_settings.Identity = Identity(identity)
        engine = _await(self._profile.AddEngineAsync(engine_settings))
        return MipEngine(engine, identity)

    def unload_engine(self, engine: MipEngine) -> None:
        _await(self._profile.UnloadEngineAsync(engine.engine_id))

    def close(self) -> None:
        self._profile = None
        if self._context is not None:
            self._context.ShutDown()
            self._context = None


class MipRuntime:
    """Initializes the SDK and loads the file profile once per process."""

    def __init__(self, settings: Settings):
        protection = settings.protection
        self.client_id = settings.auth.client_id or ""
        self.app_name = protection.app_name
        self.app_version = protection.app_version
        self.state_dir = Path(protection.state_dir).resolve()
        self.sdk_path = Path(protection.sdk_path) if protection.sdk_path else default_sdk_path()
        self.log_level = protection.log_level
        self._profile: MipProfile | None = None

    @property
    def is_loaded(self) -> bool:
        return self._profile is not None

    def load_profile(self) -> MipProfile:
        """Initialize the SDK and load a file profile with on-disk caching.

        Raises:
            ProfileLoadError: assemblies missing or the SDK refused the profile.
        """
        if self._profile is not None:
            return self._profile

        _load_mip_assemblies(self.sdk_path)

        try:
            from Microsoft.InformationProtection import (
                ApplicationInfo,
                CacheStorageType,
                LogLevel,
                MIP,
                MipComponent,
            )
            from Microsoft.InformationProtection.File import FileProfileSettings

            MIP.Initialize(MipComponent.File, _native_path(self.sdk_path))

            app_info = ApplicationInfo()
            app_info.ApplicationId = self.client_id
            app_info.ApplicationName = self.app_name
            app_info.ApplicationVersion = self.app_version

            self.state_dir.mkdir(parents=True, exist_ok=True)
            context = MIP.CreateMipContext(
                app_info, str(self.state_dir), getattr(LogLevel, self.log_level), None, None
            )
            profile_settings = FileProfileSettings(
                context, CacheStorageType.OnDisk, _create_consent_delegate()
            )
            profile = _await(MIP.LoadFileProfileAsync(profile_settings))
        except Exception as e:
            raise ProfileLoadError(f"Failed to load MIP file profile: {e}") from e

        self._profile = MipProfile(profile, context)
        logger.info("MIP file profile loaded (state dir %s)", self.state_dir)
        return self._profile

    def shutdown(self) -> None:
        if self._profile is not None:
            try:
                self._profile.close()
            except Exception as e:
                logger.warning("Error during MIP shutdown: %s", e)
        self._profile = None
        logger.info("MIP runtime shut down")
