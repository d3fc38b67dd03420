from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.permissions import AllowAny

from .models import Campaign, CampaignStatus, EmailCampaign
from .serializers import (
    AudienceCountSerializer, CampaignSerializer, EmailCampaignSerializer, OverviewSerializer, SendTestSerializer,
)
from .services import campaigns as services
from .services import email_service, exceptions


ERROR_STATUS = {
    exceptions.InvalidState: status.HTTP_409_CONFLICT,
    exceptions.ZeroRecipients: status.HTTP_400_BAD_REQUEST,
    exceptions.InvalidPhone: status.HTTP_400_BAD_REQUEST,
    exceptions.DiscountProvisioningError: status.HTTP_502_BAD_GATEWAY,
}


def error_response(e: exceptions.DomainError) -> Response:
    code = next((v for k, v in ERROR_STATUS.items() if isinstance(e, k)), status.HTTP_400_BAD_REQUEST)
    return Response({"detail": str(e)}, status=code)


class CampaignViewSet(viewsets.ModelViewSet):
    queryset = Campaign.objects.all()
    serializer_class = CampaignSerializer
    permission_classes = [AllowAny]
    filterset_fields = {
        "status": ["exact"],
        "audience_type": ["exact"],
        "discount_type": ["exact"],
        "created_at": ["date__gte", "date__lte"],
    }
    search_fields = ["name"]
    ordering_fields = ["created_at", "scheduled_at", "sent_count", "total_revenue"]

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        instance: Campaign = self.get_object()
        serializer = self.get_serializer(instance, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        try:
            campaign = services.update_campaign(instance, serializer)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response(self.get_serializer(campaign).data, status=status.HTTP_200_OK)

    def destroy(self, request, *args, **kwargs):
        try:
            services.delete_campaign(self.get_object())
        except exceptions.DomainError as e:
            return error_response(e)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"])
    def send(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            result = services.send_campaign(campaign_id=pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response(
            {"detail": "Sending started.", **result},
            status=status.HTTP_202_ACCEPTED,
        )

    @action(detail=True, methods=["post"])
    def pause(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            campaign = services.pause_campaign(pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response({"detail": "Paused.", "status": campaign.status}, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"])
    def resume(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            campaign = services.resume_campaign(pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response({"detail": "Resumed.", "status": campaign.status}, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            result = services.cancel_campaign(pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response(
            {"detail": "Cancelled.", "status": result["campaign"].status, "removed_pending": result["removed_pending"]},
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="test", serializer_class=SendTestSerializer)
    def send_test(self, request, pk: str | None = None) -> Response:
        self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = services.send_test_sms(campaign_id=pk, phone=serializer.validated_data["phone"])
        except exceptions.DomainError as e:
            return error_response(e)
        code = status.HTTP_200_OK if result["success"] else status.HTTP_502_BAD_GATEWAY
        return Response({"detail": "Test SMS sent." if result["success"] else "Test SMS failed.", **result}, status=code)

    @action(detail=True, methods=["get"])
    def stats(self, request, pk: str | None = None) -> Response:
        campaign = self.get_object()
        return Response(services.campaign_stats(campaign), status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"])
    def recalculate(self, request, pk: str | None = None) -> Response:
        campaign = services.recalculate_stats(self.get_object())
        return Response({"detail": "Stats recalculated.", "stats": campaign.stats()}, status=status.HTTP_200_OK)

    @action(detail=True, methods=["get"])
    def audience(self, request, pk: str | None = None) -> Response:
        return Response(services.audience_preview(self.get_object()), status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"], url_path="audience-count", serializer_class=AudienceCountSerializer)
    def audience_count(self, request) -> Response:
        serializer = self.get_serializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        count = services.audience_count(**serializer.validated_data)
        return Response({**serializer.validated_data, "count": count}, status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"], serializer_class=OverviewSerializer)
    def overview(self, request) -> Response:
        serializer = self.get_serializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        return Response(services.stats_overview(serializer.validated_data["days"]), status=status.HTTP_200_OK)


class EmailCampaignViewSet(viewsets.ModelViewSet):
    queryset = EmailCampaign.objects.select_related("mailing_list")
    serializer_class = EmailCampaignSerializer
    permission_classes = [AllowAny]
    filterset_fields = ["status", "mailing_list"]
    search_fields = ["name", "subject"]
    ordering_fields = ["created_at", "sent_count"]

    def update(self, request, *args, **kwargs):
        if self.get_object().status != CampaignStatus.Draft:
            return error_response(exceptions.InvalidState("Only draft email campaigns can be edited."))
        return super().update(request, *args, **kwargs)

    def destroy(self, request, *args, **kwargs):
        if self.get_object().status == CampaignStatus.Sending:
            return error_response(exceptions.InvalidState("Cancel the email campaign before deleting it."))
        return super().destroy(request, *args, **kwargs)

    @action(detail=True, methods=["post"])
    def send(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            result = email_service.send_email_campaign(campaign_id=pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response({"detail": "Sending started.", **result}, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk: str | None = None) -> Response:
        self.get_object()
        try:
            result = email_service.cancel_email_campaign(pk)
        except exceptions.DomainError as e:
            return error_response(e)
        return Response(
            {"detail": "Cancelled.", "status": result["campaign"].status, "removed_pending": result["removed_pending"]},
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["get"])
    def stats(self, request, pk: str | None = None) -> Response:
        return Response(email_service.campaign_stats(self.get_object()), status=status.HTTP_200_OK)
