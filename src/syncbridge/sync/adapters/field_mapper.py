"""Field mappers between the protocol engine and legacy platform schemas.

These adapters implement IEntityMapper and encapsulate every field rename,
tier/limits translation and sanitization rule. Both directions blank
sensitive fields, so nothing secret crosses the boundary either way.
"""

from typing import Any

from ..domain.entities import EntityClass, SyncEntity
from ..domain.ports import IEntityMapper
from ..domain.tiers import limits_to_tier, tier_to_limits

# Blanked in every entity of every class, in both directions.
SENSITIVE_FIELDS = frozenset({
    "credentials",
    "password",
    "secret",
    "accessToken",
    "refreshToken",
    "credentialsValue",
})


def sanitize(entity: dict[str, Any], extra: frozenset[str] = frozenset()) -> dict[str, Any]:
    """Return a copy with every sensitive field present replaced by "".

    Nested objects (additionalInfo and the like) are sanitized too.
    """
    sensitive = SENSITIVE_FIELDS | extra
    clean: dict[str, Any] = {}
    for key, value in entity.items():
        if key in sensitive:
            clean[key] = ""
        elif isinstance(value, dict):
            clean[key] = sanitize(value, extra)
        elif isinstance(value, list):
            clean[key] = [sanitize(v, extra) if isinstance(v, dict) else v for v in value]
        else:
            clean[key] = value
    return clean


class DeviceFieldMapper(IEntityMapper):
    """Maps devices. Both schemas share field names.

    credentials never leave the protocol engine; the legacy platform keeps
    its own device credentials. version and createdTime are managed by the
    legacy platform and are not diffed.
    """

    FIELDS = (
        "id",
        "name",
        "type",
        "tenantId",
        "customerId",
        "credentials",
        "label",
        "deviceProfileId",
        "firmwareId",
        "softwareId",
        "externalId",
        "version",
        "additionalInfo",
        "createdTime",
        "deviceData",
    )

    SENSITIVE = frozenset({"credentials"})
    NOT_COMPARED = frozenset({"version", "createdTime"})

    def _copy(self, entity: SyncEntity) -> SyncEntity:
        mapped = {field: entity[field] for field in self.FIELDS if field in entity}
        return sanitize(mapped, self.SENSITIVE)

    def to_target(self, source: SyncEntity) -> SyncEntity:
        return self._copy(source)

    def to_source(self, target: SyncEntity) -> SyncEntity:
        return self._copy(target)

    def comparable(self, target: SyncEntity) -> dict[str, Any]:
        excluded = SENSITIVE_FIELDS | self.SENSITIVE | self.NOT_COMPARED
        return {
            field: target.get(field)
            for field in self.FIELDS
            if field not in excluded
        }


class TenantFieldMapper(IEntityMapper):
    """Maps tenants.

    Source -> target:
        stateName -> state
        limits{maxUsers,maxDevices,maxAssets,maxCustomers} -> tenantProfileId
    """

    SHARED_FIELDS = (
        "id",
        "name",
        "title",
        "region",
        "country",
        "city",
        "address",
        "address2",
        "zip",
        "phone",
        "email",
        "createdTime",
        "additionalInfo",
    )

    NOT_COMPARED = frozenset({"createdTime"})

    def to_target(self, source: SyncEntity) -> SyncEntity:
        target = {field: source[field] for field in self.SHARED_FIELDS if field in source}
        if "stateName" in source:
            target["state"] = source["stateName"]
        target["tenantProfileId"] = limits_to_tier(source.get("limits"))
        return sanitize(target)

    def to_source(self, target: SyncEntity) -> SyncEntity:
        source = {field: target[field] for field in self.SHARED_FIELDS if field in target}
        if "state" in target:
            source["stateName"] = target["state"]
        source["limits"] = tier_to_limits(target.get("tenantProfileId"))
        return sanitize(source)

    def comparable(self, target: SyncEntity) -> dict[str, Any]:
        fields = [f for f in self.SHARED_FIELDS if f not in self.NOT_COMPARED]
        compared = {field: target.get(field) for field in fields if field not in SENSITIVE_FIELDS}
        compared["state"] = target.get("state")
        compared["tenantProfileId"] = target.get("tenantProfileId")
        return compared


_MAPPERS: dict[EntityClass, IEntityMapper] = {
    EntityClass.DEVICE: DeviceFieldMapper(),
    EntityClass.TENANT: TenantFieldMapper(),
}


def get_mapper(entity_class: EntityClass) -> IEntityMapper:
    """Mapper for an entity class."""
    return _MAPPERS[EntityClass(entity_class)]
