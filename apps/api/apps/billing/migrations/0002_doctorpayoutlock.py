from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('billing', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='DoctorPayoutLock',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('doctor_ref', models.CharField(max_length=64, unique=True, verbose_name='Doctor')),
            ],
            options={
                'db_table': 'billing_doctor_payout_locks',
            },
        ),
    ]
