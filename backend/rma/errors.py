"""RMA domain errors. Routers map these onto HTTP status codes."""


class RmaError(Exception):
    code = "rma_error"

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self)}


class CaseNotFoundError(RmaError):
    code = "rma_case_not_found"

    def __init__(self, case_id):
        super().__init__(f"RMA case {case_id} not found")
        self.case_id = case_id


class InvalidTransitionError(RmaError):
    """Target stage is not a forward transition from the current stage."""

    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move RMA case from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status

    def to_detail(self) -> dict:
        return {**super().to_detail(), "from_status": self.from_status, "to_status": self.to_status}


class MissingRequiredFieldsError(RmaError):
    code = "missing_required_fields"

    def __init__(self, to_status: str, missing_fields: list[str]):
        super().__init__(f"Moving to {to_status} requires: {', '.join(missing_fields)}")
        self.to_status = to_status
        self.missing_fields = missing_fields

    def to_detail(self) -> dict:
        return {**super().to_detail(), "to_status": self.to_status, "missing_fields": self.missing_fields}


class WarrantyDecisionError(RmaError):
    code = "invalid_warranty_decision"
