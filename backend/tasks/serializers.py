from rest_framework import serializers


class TaskInputSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255, allow_blank=True)
    due_date = serializers.DateField(required=False, allow_null=True)
    dependency_ids = serializers.ListField(child=serializers.IntegerField(), required=False, default=list)

    def validate_title(self, value: str):
        if not value.strip():
            raise serializers.ValidationError('Title is required')
        return value


class DependencyUpdateSerializer(serializers.Serializer):
    # null clears the set, same as []
    dependency_ids = serializers.ListField(child=serializers.IntegerField(), allow_null=True)

    def validate_dependency_ids(self, value):
        return value or []


class DependencySerializer(serializers.Serializer):
    id = serializers.IntegerField()
    title = serializers.CharField()
    due_date = serializers.DateField(allow_null=True)


class TaskOutputSerializer(serializers.Serializer):
    """Task plus the derived graph annotations passed in through `context`.

    Expected context keys: `starts` (id -> date), `level_of`, `critical_path`
    and `image_url` (callable id -> url or None).
    """
    id = serializers.IntegerField()
    title = serializers.CharField()
    due_date = serializers.DateField(allow_null=True)
    created_at = serializers.DateTimeField()
    dependencies = serializers.SerializerMethodField()
    earliest_start = serializers.SerializerMethodField()
    level = serializers.SerializerMethodField()
    is_critical = serializers.SerializerMethodField()
    image_url = serializers.SerializerMethodField()

    def get_dependencies(self, obj):
        deps = sorted(obj.dependencies.all(), key=lambda d: d.id)
        return DependencySerializer(deps, many=True).data

    def get_earliest_start(self, obj):
        start = self.context.get('starts', {}).get(obj.id)
        return start.isoformat() if start else None

    def get_level(self, obj):
        return self.context.get('level_of', {}).get(obj.id)

    def get_is_critical(self, obj):
        return obj.id in self.context.get('critical_path', ())

    def get_image_url(self, obj):
        lookup = self.context.get('image_url')
        return lookup(obj.id) if lookup else None
