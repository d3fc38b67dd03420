from rest_framework.routers import DefaultRouter
from .views import CustomerViewSet, MailingListViewSet, SubscriberViewSet

app_name = "audience"

router = DefaultRouter()
router.register(r"subscribers", SubscriberViewSet, basename="subscriber")
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"lists", MailingListViewSet, basename="list")


urlpatterns = router.urls
