from marketplace.errors import VendorNotEligibleError
from marketplace.models import Vendor, VendorCompliance


def compliance_view(vendor: Vendor) -> VendorCompliance:
    """Project a vendor record onto its marketplace eligibility flags."""
    admin_approved = vendor.status == "approved"
    return VendorCompliance(
        status=vendor.status,
        admin_approved=admin_approved,
        contract_accepted=vendor.contract_accepted,
        training_completed=vendor.training_completed,
        can_publish=admin_approved and vendor.contract_accepted and vendor.training_completed,
    )


def can_publish(vendor: Vendor) -> bool:
    return compliance_view(vendor).can_publish


def can_offer(vendor: Vendor) -> bool:
    return compliance_view(vendor).can_publish


def assert_vendor_eligible(vendor: Vendor) -> None:
    view = compliance_view(vendor)
    if view.can_publish:
        return
    missing = []
    if not view.admin_approved:
        missing.append("admin approval")
    if not view.contract_accepted:
        missing.append("contract acceptance")
    if not view.training_completed:
        missing.append("training")
    raise VendorNotEligibleError(
        f"Vendor account is {vendor.status}; missing {', '.join(missing)}"
    )
