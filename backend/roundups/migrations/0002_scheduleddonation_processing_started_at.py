from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("roundups", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="scheduleddonation",
            name="processing_started_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
    ]
