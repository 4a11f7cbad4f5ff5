from app.agents.models import Profile
from app.crm.models import BuyerEvent, Lead, MediaItem, Note, Offer, SellerLead, Task, Visit
from app.inventory.models import Building, Catalogue, Inspection, Listing, Unit
from app.models.audit import AuditLog

__all__ = [
	"AuditLog",
	"Building",
	"BuyerEvent",
	"Catalogue",
	"Inspection",
	"Lead",
	"Listing",
	"MediaItem",
	"Note",
	"Offer",
	"Profile",
	"SellerLead",
	"Task",
	"Unit",
	"Visit",
]
