import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('accounts', '0001_initial'),
        ('billing', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='privateclinic',
            name='subscription_plan',
            field=models.ForeignKey(blank=True, help_text='Plan most recently purchased or switched to', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='billing.subscriptionplan'),
        ),
        migrations.AddField(
            model_name='therapist',
            name='subscription_plan',
            field=models.ForeignKey(blank=True, help_text='Plan most recently purchased or switched to', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='billing.subscriptionplan'),
        ),
    ]
