from rest_framework import viewsets, serializers, status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from django.db.models import Prefetch, QuerySet

from .models import Customer, MailingList, Subscriber
from .serializers import (
    CustomerSerializer, MailingListSerializer, MailingListDetailSerializer,
    MembershipSerializer, SubscriberSerializer,
)
from audience.services import bounces, services


class SubscriberViewSet(viewsets.ModelViewSet):
    queryset = Subscriber.objects.all()
    serializer_class = SubscriberSerializer
    permission_classes = [AllowAny]
    filterset_fields = {
        "status": ["exact"],
        "converted": ["exact"],
        "country_code": ["exact"],
        "source": ["exact"],
        "created_at": ["date__gte", "date__lte"],
    }
    search_fields = ["phone", "discount_code"]
    ordering_fields = ["created_at", "last_engaged_at"]
    ordering = ["-created_at"]


class CustomerViewSet(viewsets.ModelViewSet):
    queryset = Customer.objects.prefetch_related("lists").all()
    serializer_class = CustomerSerializer
    permission_classes = [AllowAny]
    filterset_fields = {
        "email_status": ["exact"],
        "is_bounced": ["exact"],
        "bounce_type": ["exact"],
    }
    search_fields = ["email", "first_name", "last_name"]
    ordering_fields = ["created_at", "bounce_count"]
    ordering = ["-created_at"]

    @action(detail=True, methods=["post"], url_path="reset-bounce")
    def reset_bounce(self, request, pk: str | None = None) -> Response:
        customer = bounces.reset_bounce_info(self.get_object())
        return Response(self.get_serializer(customer).data, status=status.HTTP_200_OK)


class MailingListViewSet(viewsets.ModelViewSet):
    queryset = MailingList.objects.all()
    permission_classes = [AllowAny]
    search_fields = ["name"]

    def _wants_members(self) -> bool:
        return services.include_members(self.request.query_params.get("include_members"))

    def get_queryset(self) -> QuerySet[MailingList]:
        queryset = super().get_queryset()
        if self.action == "retrieve" and self._wants_members():
            members_qs = Customer.objects.only("id", "email")
            queryset = queryset.prefetch_related(Prefetch("members", queryset=members_qs))
        return queryset

    def get_serializer_class(self) -> type[serializers.Serializer]:
        if self.action in {"add_member", "remove_member"}:
            return MembershipSerializer
        if self.action == "retrieve" and self._wants_members():
            return MailingListDetailSerializer
        return MailingListSerializer

    @action(detail=True, methods=["post"], url_path="members")
    def add_member(self, request, pk: str | None = None) -> Response:
        mailing_list = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        mailing_list.add_member(serializer.validated_data["customer"])
        return Response(MailingListSerializer(mailing_list).data, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"], url_path="members/remove")
    def remove_member(self, request, pk: str | None = None) -> Response:
        mailing_list = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        mailing_list.remove_member(serializer.validated_data["customer"])
        return Response(MailingListSerializer(mailing_list).data, status=status.HTTP_200_OK)
