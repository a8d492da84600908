"""
IDMP resource type definitions installed by the install plan.

Base types (Organization, Substance, Ingredient) go in first; the support
types and MedicinalProduct follow. Ingredient.for points at MedicinalProduct
before it exists, which the registry accepts as a forward reference.
"""

from __future__ import annotations

from dataclasses import dataclass

from idmp_registry.schemas.fields import (
    FieldDefinition,
    FieldKind,
    boolean_field,
    choice_field,
    component_field,
    concept_field,
    date_field,
    datetime_field,
    longtext_field,
    number_field,
    quantity_field,
    reference_field,
    select_field,
    text_field,
)
from idmp_registry.schemas.shapes import NAME_TYPE_SYSTEM
from idmp_registry.schemas.values import CodeableConcept, Component

IDMP_GROUP = "IDMP"
LEGACY_GROUP = "Legacy"

PRODUCT_TYPES = ["chemical", "biological", "vaccine", "blood", "radiopharmaceutical"]
LEGAL_STATUSES = ["prescription", "otc", "hospital", "narcotic"]
PUBLICATION_STATUSES = ["draft", "active", "retired", "unknown"]


@dataclass(frozen=True)
class TypeDefinition:
    name: str
    fields: list[FieldDefinition]
    description: str = ""
    group: str = IDMP_GROUP


def _property_component(name: str = "property") -> FieldDefinition:
    return component_field(
        name,
        "Property",
        [
            concept_field("propertyType", "Type", mandatory=True, element="type"),
            choice_field(
                "value",
                "Value",
                [
                    FieldKind.CODEABLE_CONCEPT,
                    FieldKind.QUANTITY,
                    FieldKind.DATE,
                    FieldKind.BOOLEAN,
                    FieldKind.LONGTEXT,
                ],
            ),
        ],
        multiple=True,
    )


# ---------------------------------------------------------------------------
# Base types
# ---------------------------------------------------------------------------

def organization() -> TypeDefinition:
    return TypeDefinition(
        "Organization",
        [
            text_field("identifier", "Identifier", unique=True),
            text_field("name", "Name", max_length=400, mandatory=True),
            concept_field("organizationType", "Type", multiple=True, element="type"),
            boolean_field("active", "Active"),
            text_field("alias", "Alias", max_length=400),
        ],
        "Manufacturers, authorisation holders and regulators",
    )


def substance() -> TypeDefinition:
    return TypeDefinition(
        "Substance",
        [
            text_field("identifier", "UNII", unique=True, mandatory=True,
                       tooltip="FDA Unique Ingredient Identifier"),
            text_field("name", "Substance Name", max_length=400, mandatory=True),
            text_field("casNumber", "CAS Number", max_length=50),
            boolean_field("instance", "Is Instance"),
            select_field("status", "Status", ["active", "inactive", "entered-in-error"]),
            concept_field("category", "Category", multiple=True),
            longtext_field("description", "Description"),
            datetime_field("expiry", "Expiry"),
        ],
        "Substance (ISO 11238)",
    )


def ingredient() -> TypeDefinition:
    return TypeDefinition(
        "Ingredient",
        [
            text_field("identifier", "Identifier", unique=True),
            select_field("status", "Status", PUBLICATION_STATUSES[:3]),
            concept_field("role", "Role", mandatory=True),
            concept_field("function", "Function", multiple=True),
            reference_field("substance", "Substance", ["Substance"], mandatory=True),
            reference_field("manufacturer", "Manufacturer", ["Organization"], multiple=True),
            reference_field("usedFor", "For", ["MedicinalProduct", "ManufacturedItem"],
                            multiple=True, element="for"),
            component_field(
                "strength",
                "Strength",
                [
                    choice_field("presentation", "Presentation",
                                 [FieldKind.QUANTITY, FieldKind.CODEABLE_CONCEPT, FieldKind.TEXT]),
                    choice_field("concentration", "Concentration",
                                 [FieldKind.QUANTITY, FieldKind.CODEABLE_CONCEPT, FieldKind.TEXT]),
                    concept_field("basis", "Basis"),
                ],
                multiple=True,
            ),
        ],
        "Ingredient of a manufactured item or medicinal product",
    )


# ---------------------------------------------------------------------------
# Support types
# ---------------------------------------------------------------------------

def manufactured_item() -> TypeDefinition:
    return TypeDefinition(
        "ManufacturedItem",
        [
            text_field("identifier", "Identifier", unique=True),
            select_field("status", "Status", PUBLICATION_STATUSES),
            text_field("name", "Name", max_length=400),
            concept_field("manufacturedDoseForm", "Dose Form", mandatory=True),
            concept_field("unitOfPresentation", "Unit of Presentation"),
            reference_field("manufacturer", "Manufacturer", ["Organization"], multiple=True),
            concept_field("ingredient", "Ingredient", multiple=True),
            _property_component(),
            component_field(
                "component",
                "Component",
                [
                    concept_field("componentType", "Type", mandatory=True, element="type"),
                    concept_field("function", "Function", multiple=True),
                    quantity_field("amount", "Amount", multiple=True),
                    _property_component(),
                ],
                multiple=True,
                recursive=True,
            ),
        ],
        "Manufactured item (tablet, capsule, ...) as produced",
    )


def packaged_product() -> TypeDefinition:
    return TypeDefinition(
        "PackagedProduct",
        [
            text_field("identifier", "Identifier", unique=True),
            text_field("name", "Name", max_length=400),
            concept_field("packageType", "Type", element="type"),
            reference_field("packageFor", "Package For", ["MedicinalProduct"], multiple=True),
            concept_field("status", "Status"),
            quantity_field("containedItemQuantity", "Contained Item Quantity", multiple=True),
            longtext_field("description", "Description"),
            component_field(
                "legalStatusOfSupply",
                "Legal Status of Supply",
                [concept_field("code", "Code"), concept_field("jurisdiction", "Jurisdiction")],
                multiple=True,
            ),
            reference_field("manufacturer", "Manufacturer", ["Organization"], multiple=True),
            component_field(
                "packaging",
                "Packaging",
                [
                    text_field("identifier", "Identifier"),
                    concept_field("packagingType", "Type", element="type"),
                    number_field("quantity", "Quantity", decimal_precision=0),
                    concept_field("material", "Material", multiple=True),
                    component_field(
                        "containedItem",
                        "Contained Item",
                        [
                            reference_field("item", "Item", ["ManufacturedItem", "PackagedProduct"],
                                            mandatory=True, element="item.reference"),
                            quantity_field("amount", "Amount"),
                        ],
                        multiple=True,
                    ),
                ],
                recursive=True,
            ),
        ],
        "Packaged medicinal product",
    )


def regulated_authorization() -> TypeDefinition:
    return TypeDefinition(
        "RegulatedAuthorization",
        [
            text_field("identifier", "Identifier", unique=True),
            reference_field("subject", "Subject", ["MedicinalProduct", "PackagedProduct"], multiple=True),
            concept_field("authorizationType", "Type", element="type"),
            longtext_field("description", "Description"),
            concept_field("region", "Region", multiple=True),
            concept_field("status", "Status"),
            datetime_field("statusDate", "Status Date"),
            date_field("validFrom", "Valid From", element="validityPeriod.start"),
            date_field("validTo", "Valid To", element="validityPeriod.end"),
            reference_field("holder", "Holder", ["Organization"]),
            reference_field("regulator", "Regulator", ["Organization"]),
        ],
        "Marketing authorisation",
    )


def clinical_use_definition() -> TypeDefinition:
    return TypeDefinition(
        "ClinicalUseDefinition",
        [
            text_field("identifier", "Identifier", unique=True),
            select_field(
                "useType",
                "Type",
                ["indication", "contraindication", "interaction", "undesirable-effect", "warning"],
                mandatory=True,
                element="type",
            ),
            reference_field("subject", "Subject", ["MedicinalProduct", "Substance"], multiple=True),
            concept_field("status", "Status"),
            concept_field("diseaseSymptomProcedure", "Disease / Symptom / Procedure",
                          element="indication.diseaseSymptomProcedure"),
            longtext_field("warning", "Warning", element="warning.description"),
        ],
        "Indications, contraindications, interactions and warnings",
    )


def medicinal_product() -> TypeDefinition:
    return TypeDefinition(
        "MedicinalProduct",
        [
            text_field("identifier", "MPID", unique=True, mandatory=True,
                       tooltip="Medicinal Product Identifier"),
            component_field(
                "name",
                "Name",
                [
                    text_field("productName", "Product Name", max_length=400, mandatory=True),
                    concept_field("nameType", "Name Type", element="type"),
                    concept_field("usage", "Usage", multiple=True),
                ],
                mandatory=True,
                multiple=True,
            ),
            concept_field("productType", "Product Type", element="type"),
            concept_field("domain", "Domain"),
            text_field("version", "Version", max_length=50),
            concept_field("status", "Status"),
            datetime_field("statusDate", "Status Date"),
            longtext_field("description", "Description"),
            concept_field("combinedPharmaceuticalDoseForm", "Combined Dose Form"),
            concept_field("route", "Route of Administration", multiple=True),
            longtext_field("indication", "Indication"),
            concept_field("legalStatusOfSupply", "Legal Status of Supply"),
            concept_field("additionalMonitoringIndicator", "Additional Monitoring"),
            concept_field("classification", "Classification", multiple=True,
                          tooltip="ATC and other classifications"),
            reference_field("ingredient", "Ingredient", ["Substance"], multiple=True, mandatory=True),
            reference_field("comprisedOf", "Comprised Of", ["ManufacturedItem"], multiple=True),
            _property_component("characteristic"),
        ],
        "Medicinal product (ISO 11615)",
    )


# ---------------------------------------------------------------------------
# Legacy flat types (pre-FHIR data)
# ---------------------------------------------------------------------------

def legacy_substance() -> TypeDefinition:
    return TypeDefinition(
        "LegacySubstance",
        [
            text_field("code", "UNII"),
            text_field("substanceName", "Substance Name", max_length=400),
            text_field("casNumber", "CAS Number", max_length=50),
            text_field("substanceType", "Substance Type"),
        ],
        group=LEGACY_GROUP,
    )


def legacy_medicinal_product() -> TypeDefinition:
    return TypeDefinition(
        "LegacyMedicinalProduct",
        [
            text_field("mpid", "MPID"),
            text_field("name", "Name", max_length=400),
            text_field("nonproprietaryName", "Nonproprietary Name", max_length=400),
            select_field("productType", "Product Type", PRODUCT_TYPES),
            text_field("atcCode", "ATC Code", max_length=20),
            select_field("legalStatusOfSupply", "Legal Status of Supply", LEGAL_STATUSES),
            longtext_field("description", "Description"),
            reference_field("ingredients", "Ingredients", ["LegacySubstance"], multiple=True),
        ],
        group=LEGACY_GROUP,
    )


def base_types() -> list[TypeDefinition]:
    return [organization(), substance(), ingredient()]


def support_types() -> list[TypeDefinition]:
    return [
        manufactured_item(),
        packaged_product(),
        regulated_authorization(),
        clinical_use_definition(),
        medicinal_product(),
    ]


def legacy_types() -> list[TypeDefinition]:
    return [legacy_substance(), legacy_medicinal_product()]


# Fields the validate step expects on each installed type.
REQUIRED_FIELDS: dict[str, list[str]] = {
    "MedicinalProduct": ["identifier", "name", "productType", "ingredient", "classification"],
    "Substance": ["identifier", "name", "casNumber"],
    "Ingredient": ["role", "substance"],
    "Organization": ["name"],
    "ManufacturedItem": ["manufacturedDoseForm", "component"],
    "PackagedProduct": ["packaging"],
    "RegulatedAuthorization": ["subject"],
    "ClinicalUseDefinition": ["useType"],
}


def name_from_legacy_string(text: str, name_type: str | None = None) -> Component:
    """Turn a bare legacy product-name string into a `name` component."""
    values: dict = {"productName": text.strip()}
    if name_type:
        values["nameType"] = CodeableConcept.of(NAME_TYPE_SYSTEM, name_type)
    return Component(values=values)
