from rest_framework.routers import DefaultRouter
from .views import CampaignViewSet, EmailCampaignViewSet

app_name = "campaign"

router = DefaultRouter()
router.register(r"campaigns", CampaignViewSet, basename="campaign")
router.register(r"email-campaigns", EmailCampaignViewSet, basename="email-campaign")


urlpatterns = router.urls
